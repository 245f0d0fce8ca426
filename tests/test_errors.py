import json
import unittest

import requests

from unical.errors import (
    ConflictError,
    CredentialExpired,
    IncrementalSyncInvalidated,
    RateLimited,
    SyncError,
    TransientNetwork,
    error_kind,
    raise_for_status,
)


def _response(status: int, payload=None, headers=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload or {}).encode("utf-8")
    response.headers.update(headers or {})
    return response


class RaiseForStatusTests(unittest.TestCase):
    def test_success_passes_through(self) -> None:
        raise_for_status(_response(200), "google")
        raise_for_status(_response(204), "google")

    def test_status_mapping(self) -> None:
        cases = {
            401: CredentialExpired,
            403: CredentialExpired,
            409: ConflictError,
            410: IncrementalSyncInvalidated,
            412: ConflictError,
            500: TransientNetwork,
            503: TransientNetwork,
            404: SyncError,
        }
        for status, expected in cases.items():
            with self.subTest(status=status):
                with self.assertRaises(expected) as ctx:
                    raise_for_status(_response(status), "google")
                self.assertEqual(ctx.exception.provider, "google")

    def test_429_carries_retry_after(self) -> None:
        with self.assertRaises(RateLimited) as ctx:
            raise_for_status(_response(429, headers={"Retry-After": "30"}), "microsoft")
        self.assertEqual(ctx.exception.retry_after, 30.0)

    def test_google_quota_403_is_rate_limited_not_auth(self) -> None:
        payload = {"error": {"code": 403, "errors": [{"reason": "rateLimitExceeded"}]}}
        with self.assertRaises(RateLimited) as ctx:
            raise_for_status(_response(403, payload), "google")
        self.assertIsNone(ctx.exception.retry_after)

    def test_error_kind(self) -> None:
        self.assertEqual(error_kind(CredentialExpired("x")), "credential_expired")
        self.assertEqual(error_kind(requests.Timeout()), "transient_network")
        self.assertEqual(error_kind(RuntimeError("boom")), "unknown")


if __name__ == "__main__":
    unittest.main()
