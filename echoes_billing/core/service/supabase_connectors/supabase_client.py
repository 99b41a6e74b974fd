import os

import logfire
from dotenv import load_dotenv
from supabase import create_client, Client

load_dotenv()

ENTITLEMENT_RECORDS_TABLE_NAME = "ENTITLEMENT_RECORDS"

_service_role_client: Client | None = None


def get_supabase_service_role_client() -> Client:
    """This function returns a supabase client with the service role key. Entitlement records are never
    written with a user key, installs are anonymous."""
    global _service_role_client
    if _service_role_client is not None:
        return _service_role_client

    url = os.environ.get("SUPABASE_URL", None)
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", None)
    if url is None:
        raise RuntimeError("SUPABASE_URL environment variable is not set")
    if key is None:
        raise RuntimeError("Supabase service role key is not set")

    logfire.info("Creating Supabase service role client")
    _service_role_client = create_client(supabase_url=url, supabase_key=key)
    return _service_role_client
