"""
Fake requests transport used by the tests.
"""

import json
from collections import namedtuple


SITE_SERVER = "sccm.contoso.com"

Call = namedtuple("Call", ["method", "url", "params", "body", "kwargs"])


def api_url(path):
    """Return the Admin Service URL of a path on the test site server."""
    return f"https://{SITE_SERVER}/AdminService/{path}"


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, json_body=None, text=None, reason=None):
        self.status_code = status_code
        self._json_body = json_body
        self.reason = reason or ("OK" if status_code < 400 else "Error")
        if json_body is not None:
            self.text = json.dumps(json_body)
        else:
            self.text = text or ""
        self.content = self.text.encode("utf-8")

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json_body is None:
            raise ValueError("No JSON object could be decoded")
        return self._json_body


class FakeTransport:
    """Replaces requests.request. Routes are matched in the order they
    were added; a route added with once=True is dropped after its first
    match."""

    def __init__(self):
        self.calls = []
        self.routes = []

    def add(self, method, path, json_body=None, status_code=200, params=None, once=False, exception=None):
        response = FakeResponse(status_code=status_code, json_body=json_body)
        self.routes.append(
            {
                "method": method,
                "url": path if path.startswith("https://") else api_url(path),
                "params": params,
                "response": response,
                "once": once,
                "exception": exception,
            }
        )

    def __call__(self, method, url, **kwargs):
        call = Call(method, url, kwargs.get("params"), kwargs.get("json"), kwargs)
        self.calls.append(call)
        for route in self.routes:
            if route["method"] != method or route["url"] != url:
                continue
            if route["params"] is not None:
                sent = call.params or {}
                if any(sent.get(k) != v for k, v in route["params"].items()):
                    continue
            if route["once"]:
                self.routes.remove(route)
            if route["exception"] is not None:
                raise route["exception"]
            return route["response"]
        raise AssertionError(f"Unexpected request: {method} {url} params={call.params}")

    def calls_to(self, method, path):
        url = api_url(path)
        return [c for c in self.calls if c.method == method and c.url == url]


