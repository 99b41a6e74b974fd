"""Stage-tagged logging for purchase, restore and status flows."""
import itertools
import secrets
import time
from typing import Any, Dict, Optional

import logfire

_flow_counter = itertools.count(1)


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def generate_flow_id() -> str:
    """Short id tying together every log line of one user-visible flow."""
    return f"{_base36(int(time.time() * 1000))}-{secrets.token_hex(2)}-{next(_flow_counter)}"


def flow_log(
    stage: str,
    level: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    flow_id: Optional[str] = None,
) -> None:
    attributes = {"iap_stage": stage}
    if flow_id:
        attributes["flow_id"] = flow_id
    if data:
        attributes.update(data)

    text = f"[IAP:{stage}] {message}"
    if level == "error":
        logfire.error(text, extra=attributes)
    elif level == "warning":
        logfire.warning(text, extra=attributes)
    elif level == "debug":
        logfire.debug(text, extra=attributes)
    else:
        logfire.info(text, extra=attributes)
