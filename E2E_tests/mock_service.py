from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import httpx


class AbstractMockService(ABC):
    """
    Abstract base class for mock services used to test the entitlement engine end to end. These services
    simulate the store SDK and the billing backend the engine talks to.

    """
    @abstractmethod
    def __init__(self):
        """
        Initialize the mock service.
        """
        pass


class _MockSubscription:
    def __init__(self, listeners, callback):
        self.listeners = listeners
        self.callback = callback

    def remove(self):
        if self.callback in self.listeners:
            self.listeners.remove(self.callback)


class MockBillingSDK(AbstractMockService):
    """
    In-memory stand-in for the native billing SDK binding.

    Every call is appended to `calls` (and to the shared `timeline` when one is
    given) so tests can assert on ordering.
    """

    def __init__(self, timeline=None):
        super().__init__()
        self.timeline = timeline if timeline is not None else []
        self.calls = []
        # One entry per init attempt; the last one repeats. Exceptions are raised.
        self.connect_results = [True]
        self.products = [
            {"id": "com.thequietframe.echoes.monthly"},
            {"id": "com.thequietframe.echoes.yearly"},
        ]
        self.purchase_response = None
        self.available_purchases = []
        self.active_subscriptions = []
        self.current_entitlements = {}
        self.finished = []
        self.update_listeners = []
        self.error_listeners = []

    def _record(self, name, *args):
        self.calls.append((name, args))
        self.timeline.append(f"sdk:{name}")

    @staticmethod
    def _result(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def init_connection(self):
        self._record("init_connection")
        result = self.connect_results.pop(0) if len(self.connect_results) > 1 else self.connect_results[0]
        return self._result(result)

    async def end_connection(self):
        self._record("end_connection")

    async def fetch_products(self, skus):
        self._record("fetch_products", tuple(skus))
        return self._result(self.products)

    async def request_purchase(self, sku, offer_token=None):
        self._record("request_purchase", sku, offer_token)
        return self._result(self.purchase_response)

    async def get_available_purchases(self):
        self._record("get_available_purchases")
        return self._result(self.available_purchases)

    async def get_active_subscriptions(self, skus):
        self._record("get_active_subscriptions", tuple(skus))
        return self._result(self.active_subscriptions)

    async def current_entitlement_ios(self, sku):
        self._record("current_entitlement_ios", sku)
        return self._result(self.current_entitlements.get(sku))

    async def finish_transaction(self, purchase, is_consumable=False):
        self._record("finish_transaction", purchase)
        self.finished.append(purchase)

    def add_purchase_updated_listener(self, callback):
        self.update_listeners.append(callback)
        return _MockSubscription(self.update_listeners, callback)

    def add_purchase_error_listener(self, callback):
        self.error_listeners.append(callback)
        return _MockSubscription(self.error_listeners, callback)

    async def push_purchase(self, raw):
        """Simulate the store pushing a purchase update."""
        for callback in list(self.update_listeners):
            await callback(raw)

    async def push_error(self, raw):
        for callback in list(self.error_listeners):
            await callback(raw)

    def called(self, name):
        return [args for call, args in self.calls if call == name]


class MockBillingBackend(AbstractMockService):
    """
    Billing backend served through httpx.MockTransport.

    Responses are queued per path as (status_code, json); when a queue is
    empty the default for that path is returned.
    """

    BASE_URL = "https://billing.test"

    def __init__(self, timeline=None):
        super().__init__()
        self.timeline = timeline if timeline is not None else []
        self.requests = []
        self.unreachable = False
        self.sessions_issued = 0
        self.queued = {
            "/api/session/start": [],
            "/api/billing/status": [],
            "/api/billing/verify": [],
        }
        self.defaults = {
            "/api/billing/status": (200, {"entitlement": "free", "expiresAt": None}),
            "/api/billing/verify": (200, {"entitlement": "free", "expiresAt": None}),
        }

    def queue(self, path, status_code, body=None):
        self.queued[path].append((status_code, body if body is not None else {}))

    def _session_response(self):
        self.sessions_issued += 1
        expires = datetime.now(timezone.utc) + timedelta(days=30)
        return 200, {
            "sessionToken": f"session-{self.sessions_issued}",
            "expiresAt": expires.isoformat().replace("+00:00", "Z"),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(request)
        self.timeline.append(f"backend:{path}")
        if self.unreachable:
            raise httpx.ConnectError("backend unreachable", request=request)

        if self.queued.get(path):
            status_code, body = self.queued[path].pop(0)
            if path == "/api/session/start" and status_code == 200:
                self.sessions_issued += 1
        elif path == "/api/session/start":
            status_code, body = self._session_response()
        elif path in self.defaults:
            status_code, body = self.defaults[path]
        else:
            status_code, body = 404, {"detail": "Not Found"}
        return httpx.Response(status_code, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=self.BASE_URL)

    def requests_to(self, path):
        return [r for r in self.requests if r.url.path == path]
