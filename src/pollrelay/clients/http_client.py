"""
Gasless Relay HTTP Client

Thin httpx.AsyncClient extension that reads the next nonce and typed-data
domain from a relay server, signs locally and posts the signature. The
private key never leaves the process.
"""

from typing import Any, Dict, Optional

import httpx
from eth_account import Account

from ..adapters.evm.signatures import sign_claim_reward, sign_vote, sign_wallet_call
from ..schemas.https import ClaimRequest, NonceResponse, VoteRequest


class RelayClientError(Exception):
    """
    Raised when the relay answers with an error envelope.

    Attributes:
        status_code: HTTP status of the response.
        error_class: Machine-readable error identifier from the server.
        reason: Human-readable explanation from the server.
    """

    def __init__(self, status_code: int, error: Dict[str, Any]):
        self.status_code = status_code
        self.error_class = error.get("error_class", "internal_error")
        self.reason = error.get("reason", "")
        self.details = error.get("details") or {}
        super().__init__(f"{status_code} {self.error_class}: {self.reason}")


class RelayClient(httpx.AsyncClient):
    """
    Extended httpx.AsyncClient speaking the relay API.

    Fully compatible with httpx.AsyncClient and usable as an async context
    manager.

    Usage:
        ```python
        async with RelayClient(base_url="http://localhost:8000") as client:
            result = await client.vote(poll, option=1, private_key=voter_key)
            print(result["status"], result["tx_hash"])
        ```
    """

    # =========================================================================
    # Response handling
    # =========================================================================

    @staticmethod
    def _unwrap(response: httpx.Response, outcome: bool = False) -> Dict[str, Any]:
        """
        Return the JSON body or raise :class:`RelayClientError` for an error envelope.

        With ``outcome`` set, non-envelope bodies are returned whatever the
        status: relay results for reverted, pending or failed submissions are
        answers, not errors.
        """
        body = response.json()
        if response.status_code >= 400 and isinstance(body, dict) and "error" in body:
            raise RelayClientError(response.status_code, body["error"])
        if not outcome:
            response.raise_for_status()
        return body

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_wallet(self, owner: str) -> Dict[str, Any]:
        return self._unwrap(await self.get(f"/wallets/{owner}"))

    async def deploy_wallet(self, owner: str) -> Dict[str, Any]:
        return self._unwrap(await self.post(f"/wallets/{owner}/deploy"))

    async def get_nonce(self, poll: str, signer: str) -> NonceResponse:
        return NonceResponse.model_validate(self._unwrap(await self.get(f"/nonces/{poll}/{signer}")))

    # =========================================================================
    # Gasless actions
    # =========================================================================

    async def vote(
        self,
        poll: str,
        option: int,
        private_key: str,
        already_voted_hint: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Sign and submit a vote.

        Flow:
            1. Read the next nonce and domain for the voter
            2. Sign Vote{voter, option, nonce} locally
            3. Post the signature and return the relay result

        Raises:
            RelayClientError: If the relay rejects the request.
        """
        voter = Account.from_key(private_key).address
        info = await self.get_nonce(poll, voter)
        signature = sign_vote(
            private_key=private_key,
            poll=info.verifying_contract,
            option=option,
            nonce=info.nonce,
            chain_id=int(info.domain["chainId"]),
            domain_name=info.domain["name"],
            domain_version=info.domain["version"],
        )
        body = VoteRequest(
            signer=voter,
            option=option,
            signature=signature,
            nonce=info.nonce,
            already_voted_hint=already_voted_hint,
        )
        return self._unwrap(await self.post(f"/polls/{poll}/vote", json=body.model_dump(mode="json")), outcome=True)

    async def claim_reward(self, poll: str, private_key: str) -> Dict[str, Any]:
        """Sign and submit a reward claim."""
        claimer = Account.from_key(private_key).address
        info = await self.get_nonce(poll, claimer)
        signature = sign_claim_reward(
            private_key=private_key,
            poll=info.verifying_contract,
            nonce=info.nonce,
            chain_id=int(info.domain["chainId"]),
            domain_name=info.domain["name"],
            domain_version=info.domain["version"],
        )
        body = ClaimRequest(signer=claimer, signature=signature, nonce=info.nonce)
        return self._unwrap(await self.post(f"/polls/{poll}/claim", json=body.model_dump(mode="json")), outcome=True)

    # =========================================================================
    # Poll funding
    # =========================================================================

    async def plan_funding(self, **request: Any) -> Dict[str, Any]:
        """Request a funding plan. Keyword arguments follow ``FundingPlanRequest``."""
        return self._unwrap(await self.post("/funding/plan", json=request))

    async def fund_poll(self, plan: Dict[str, Any], private_key: str) -> Dict[str, Any]:
        """
        Sign both wallet calls of a plan as its owner and execute it.

        Args:
            plan: The ``plan`` object returned by :meth:`plan_funding`.
            private_key: Owner key; must match ``plan["owner_address"]``.
        """
        signatures = [
            sign_wallet_call(
                private_key=private_key,
                target=step["target"],
                call_data=step["call_data"],
                value=step.get("value", 0),
            )
            for step in (plan["approval_step"], plan["funding_step"])
        ]
        return self._unwrap(await self.post("/funding/execute", json={
            "plan": plan,
            "approval_signature": signatures[0],
            "funding_signature": signatures[1],
        }), outcome=True)
