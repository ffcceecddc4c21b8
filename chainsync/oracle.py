"""
Chainweb node client.

The node is the source of truth for balances. Jobs only need one call:
run a read-only Pact expression on a chain and get back a status and a
result. Every failure mode (timeout, connection error, HTTP error, bad JSON,
unexpected shape) surfaces as OracleError so callers can treat them alike.
"""

import base64
import hashlib
import json
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from .errors import OracleError
from .logger import StructuredLogger, get_logger

DEFAULT_TIMEOUT = 15.0
LOCAL_GAS_LIMIT = 150000


@dataclass
class OracleResponse:
    """Normalized node answer: status is 'success' or 'failure'."""

    status: str
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "success" and self.result is not None


def details_code(module: str, account: str) -> str:
    """Pact expression returning an account's details for a fungible module."""
    escaped = account.replace("\\", "\\\\").replace('"', '\\"')
    return f'({module}.details "{escaped}")'


def _hash_cmd(cmd: str) -> str:
    digest = hashlib.blake2b(cmd.encode("utf-8"), digest_size=32).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_local_command(code: str, chain: str, network_id: str, now: Optional[int] = None) -> Dict[str, Any]:
    """Build an unsigned Pact command suitable for the /local endpoint."""
    if now is None:
        now = int(time.time())
    cmd = json.dumps(
        {
            "networkId": network_id,
            "payload": {"exec": {"data": {}, "code": code}},
            "signers": [],
            "meta": {
                "creationTime": now,
                "ttl": 600,
                "gasLimit": LOCAL_GAS_LIMIT,
                "chainId": str(chain),
                "gasPrice": 1e-8,
                "sender": "",
            },
            "nonce": f"chainsync:{now}",
        },
        separators=(",", ":"),
    )
    return {"hash": _hash_cmd(cmd), "sigs": [], "cmd": cmd}


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, dict):
        if "decimal" in value:
            value = value["decimal"]
        elif "int" in value:
            value = value["int"]
        else:
            raise OracleError(f"Unrecognized numeric literal: {value!r}")
    if isinstance(value, bool):
        raise OracleError(f"Unexpected boolean balance: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise OracleError(f"Balance is not numeric: {value!r}")


def format_balance(response: OracleResponse) -> Decimal:
    """
    Normalize a balance query result to a single Decimal.

    Accepts an account-details object with a `balance` field or a bare
    number, where numbers may be plain JSON numbers or Pact literals such as
    {"decimal": "1.5"} and {"int": 3}.

    Raises:
        OracleError: If the response is not a success or has no balance
    """
    if not response.ok:
        raise OracleError(f"Node returned status {response.status!r}: {response.result!r}")

    result = response.result
    if isinstance(result, dict) and "balance" in result:
        return _to_decimal(result["balance"])
    if isinstance(result, (int, float, str)) or (
        isinstance(result, dict) and ("decimal" in result or "int" in result)
    ):
        return _to_decimal(result)
    raise OracleError(f"Balance missing from node result: {result!r}")


def format_decimal(value: Decimal) -> str:
    """Render a balance as stored in the Balances table."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class NodeClient:
    """Read-only client for a Chainweb node's Pact local endpoint."""

    def __init__(
        self,
        base_url: str,
        network_id: str = "mainnet01",
        timeout: float = DEFAULT_TIMEOUT,
        pool_size: int = 50,
        session: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network_id = network_id
        self.timeout = timeout
        self.logger = logger or get_logger()

        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def local_url(self, chain: str) -> str:
        return (
            f"{self.base_url}/chainweb/0.0/{self.network_id}/chain/{chain}"
            "/pact/api/v1/local?signatureVerification=false&preflight=false"
        )

    def query(self, request: Dict[str, Any]) -> OracleResponse:
        """
        Run one read-only Pact expression.

        Args:
            request: {"chain": chain id, "code": Pact expression}

        Returns:
            OracleResponse with the node's status and result data

        Raises:
            OracleError: On timeout, transport error, HTTP error or bad payload
        """
        chain = str(request["chain"])
        body = build_local_command(request["code"], chain, self.network_id)
        self.logger.record_oracle_call()

        try:
            resp = self.session.post(self.local_url(chain), json=body, timeout=self.timeout)
            resp.raise_for_status()
        except requests.exceptions.Timeout as e:
            self.logger.record_oracle_failure("Timeout")
            raise OracleError(f"Node query timed out on chain {chain}") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "HTTPError"
            self.logger.record_oracle_failure(f"HTTPError_{status}")
            raise OracleError(f"Node query failed ({status}) on chain {chain}") from e
        except requests.exceptions.RequestException as e:
            self.logger.record_oracle_failure(type(e).__name__)
            raise OracleError(f"Node request error on chain {chain}: {e}") from e

        try:
            payload = resp.json()
        except ValueError as e:
            self.logger.record_oracle_failure("MalformedResponse")
            raise OracleError(f"Node returned malformed JSON on chain {chain}") from e

        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, dict) or "status" not in result:
            self.logger.record_oracle_failure("MalformedResponse")
            raise OracleError(f"Node response has no result status on chain {chain}")

        if result["status"] != "success":
            self.logger.record_oracle_failure("NonSuccessStatus")
            return OracleResponse(status=str(result["status"]), result=result.get("error"))
        return OracleResponse(status="success", result=result.get("data"))

    def close(self):
        self.session.close()
