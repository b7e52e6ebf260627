"""
Swap server client for cl-liquidity-ops

HTTP/JSON client for the swap server's REST API:
- GET  /v1/loop/out/terms -> loop out Restrictions
- GET  /v1/loop/in/terms  -> loop in Restrictions
- POST /v1/loop/in/quote  -> LoopInQuote

Restrictions are fetched fresh for every liquidity cycle; nothing is cached.
Transport, HTTP and decoding failures are raised as UpstreamError. There
are no retries: the next cycle is the retry.
"""

from typing import Dict, Optional, Any

import requests
from pyln.client import Plugin

from .errors import UpstreamError, check_cancelled
from .loop_in import parse_route_hints
from .swaps import LoopInQuote, LoopInQuoteRequest, Restrictions


class SwapServerClient:
    """
    Client for the swap server.

    Usage:
        client = SwapServerClient("http://127.0.0.1:11010", 30, plugin)
        restrictions = client.get_loop_out_terms()
    """

    def __init__(self, base_url: str, timeout: int, plugin: Plugin,
                 session: Optional[requests.Session] = None):
        """
        Args:
            base_url: Server root, e.g. 'http://127.0.0.1:11010'
            timeout: Per-request timeout in seconds
            plugin: Reference to the pyln Plugin for logging
            session: Optional requests.Session (injectable for tests)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.plugin = plugin
        self.session = session or requests.Session()

    def _request(self, method: str, path: str,
                 payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            self.plugin.log(f"Swap server request timed out: {url}", level='error')
            raise UpstreamError("swap_server", f"timeout after {self.timeout}s") from e
        except requests.exceptions.HTTPError as e:
            self.plugin.log(f"Swap server HTTP error on {path}: {e}", level='error')
            raise UpstreamError("swap_server", str(e)) from e
        except requests.exceptions.RequestException as e:
            self.plugin.log(f"Swap server request failed on {path}: {e}", level='error')
            raise UpstreamError("swap_server", str(e)) from e
        except ValueError as e:
            # Body was not JSON
            raise UpstreamError("swap_server", f"invalid response from {path}: {e}") from e

        if not isinstance(data, dict):
            raise UpstreamError("swap_server", f"unexpected response from {path}")
        return data

    @staticmethod
    def _parse_restrictions(data: Dict[str, Any]) -> Restrictions:
        try:
            minimum = int(data["min_swap_amount"])
            maximum = int(data["max_swap_amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError("swap_server", f"malformed terms: {e}") from e

        if minimum > maximum:
            raise UpstreamError(
                "swap_server", f"minimum {minimum} exceeds maximum {maximum}"
            )
        return Restrictions(minimum=minimum, maximum=maximum)

    def get_loop_out_terms(self, cancel=None) -> Restrictions:
        """Fetch the server's current loop out amount limits."""
        check_cancelled(cancel, "swap_server")
        return self._parse_restrictions(self._request("GET", "/v1/loop/out/terms"))

    def get_loop_in_terms(self, cancel=None) -> Restrictions:
        """Fetch the server's current loop in amount limits."""
        check_cancelled(cancel, "swap_server")
        return self._parse_restrictions(self._request("GET", "/v1/loop/in/terms"))

    def get_loop_in_quote(self, request: LoopInQuoteRequest, cancel=None) -> LoopInQuote:
        """Ask the server what a loop in of request.amount would cost."""
        check_cancelled(cancel, "swap_server")
        data = self._request("POST", "/v1/loop/in/quote", request.to_dict())

        try:
            # Dispatch must use the hints the server quoted against
            route_hints = request.route_hints
            if data.get("route_hints"):
                route_hints = parse_route_hints(data["route_hints"])

            return LoopInQuote(
                amount=request.amount,
                swap_fee=int(data["swap_fee_sat"]),
                htlc_publish_fee=int(data["htlc_publish_fee_sat"]),
                cltv_delta=int(data.get("cltv_delta", 0)),
                conf_target=data.get("conf_target", request.conf_target),
                route_hints=route_hints,
            )
        except (KeyError, TypeError, ValueError) as e:
            # ValidationError included
            raise UpstreamError("swap_server", f"malformed quote: {e}") from e
