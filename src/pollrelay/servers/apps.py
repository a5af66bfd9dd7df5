"""
Poll Relay Server - Event-driven FastAPI wrapper.

Exposes wallet lifecycle, nonce lookup, gasless vote and claim relay, and
poll funding over HTTP. Vote and claim requests run through the event
chain; the other routes call the relay hub directly.

Every error is returned as ``{"error": {"error_class", "reason", "details"}}``.
"""

from typing import Callable, Optional

from eth_utils import is_address, to_checksum_address
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..adapters.evm.adapter import RelayHub
from ..adapters.evm.constants import value_to_amount
from ..adapters.evm.schemas import FundingPlan, PollDraft
from ..engine.events import (
    EventBus,
    Dependencies,
    BaseEvent,
    VoteRequestEvent,
    ClaimRequestEvent,
    VerifyFailedEvent,
    RelayResultEvent,
    RelayFailedEvent,
)
from ..engine.exceptions import InvalidRequest, RelayError
from ..engine.executors import EventChain
from ..schemas.https import (
    WalletResponse,
    DeployResponse,
    NonceResponse,
    VoteRequest,
    ClaimRequest,
    FundingPlanRequest,
    FundingPlanResponse,
    FundingExecuteRequest,
    ErrorDetail,
    ErrorResponse,
)
from ..utils import logger, setup_logger
from .flows import RELAY_STATUS_CODES, http_status_for, setup_event_bus


def checked_address(value: str, field: str) -> str:
    """Checksum ``value`` or raise :class:`InvalidRequest`."""
    if not isinstance(value, str) or not is_address(value):
        raise InvalidRequest(f"{field} is not a valid address", **{field: value})
    return to_checksum_address(value)


def error_envelope(payload: dict) -> dict:
    return ErrorResponse(error=ErrorDetail(**payload)).model_dump(mode="json", exclude_none=True)


def error_response(error: RelayError) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(error), content=error_envelope(error.to_payload()))


class RelayServer(FastAPI):
    """FastAPI server for the gasless poll relay."""

    def __init__(
        self,
        hub: Optional[RelayHub] = None,
        log_level: Optional[int] = None,
        **fastapi_kwargs
    ):
        """Initialize the relay server.

        Args:
            hub: Relay hub (default: built from environment settings)
            log_level: Attach a stream handler to the package logger at this level
            **fastapi_kwargs: FastAPI arguments (title, version, etc.)
        """
        if log_level is not None:
            setup_logger(log_level)
        self.hub = hub or RelayHub()
        self.depends = Dependencies(hub=self.hub)
        self.event_bus: EventBus = setup_event_bus()

        super().__init__(**fastapi_kwargs)

        self.add_exception_handler(RelayError, self._relay_error_handler)
        self._setup_wallet_endpoints()
        self._setup_nonce_endpoint()
        self._setup_relay_endpoints()
        self._setup_funding_endpoints()

    def subscribe(self, event_class: type[BaseEvent], handler: Callable) -> None:
        """Register event handler.

        Args:
            event_class: Event type to handle
            handler: Async function(event, deps) -> Optional[BaseEvent]
        """
        self.event_bus.subscribe(event_class, handler)

    def add_hook(self, event_class: type[BaseEvent], hook: Callable) -> None:
        """Register event hook for side effects.

        Example:
            ```python
            async def notify(event: RelayResultEvent, deps):
                await push_to_voter(event.result)

            app.add_hook(RelayResultEvent, notify)
            ```
        """
        self.event_bus.hook(event_class, hook)

    def hook(self, event_class: type[BaseEvent]) -> Callable:
        """Decorator for registering event hooks.

        Example:
            @app.hook(RelayResultEvent)
            async def on_relayed(event, deps):
                await send_analytics(event)
        """
        def decorator(hook_func: Callable) -> Callable:
            self.event_bus.hook(event_class, hook_func)
            return hook_func
        return decorator

    @staticmethod
    async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path} -> {exc.error_class.value}: {exc.reason}")
        return error_response(exc)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _setup_wallet_endpoints(self) -> None:
        @self.get("/wallets/{owner}")
        async def get_wallet(owner: str):
            """Derived smart wallet address and deployment status."""
            wallet = await self.hub.deployments.status(checked_address(owner, "owner"))
            return JSONResponse(
                status_code=200,
                content=WalletResponse(
                    owner_address=wallet.owner_address,
                    wallet_address=wallet.wallet_address,
                    deployed=wallet.deployed,
                ).model_dump(mode="json"),
            )

        @self.post("/wallets/{owner}/deploy")
        async def deploy_wallet(owner: str):
            """Deploy the owner's smart wallet if it has no code yet."""
            result = await self.hub.deploy_if_needed(checked_address(owner, "owner"))
            return JSONResponse(
                status_code=200 if result.already_deployed else 201,
                content=DeployResponse(**result.model_dump()).model_dump(mode="json"),
            )

    def _setup_nonce_endpoint(self) -> None:
        @self.get("/nonces/{contract}/{signer}")
        async def get_nonce(contract: str, signer: str):
            """Next nonce and typed-data domain for a signer on a poll."""
            contract = checked_address(contract, "contract")
            signer = checked_address(signer, "signer")
            nonce = await self.hub.get_nonce(contract, signer)
            return JSONResponse(
                status_code=200,
                content=NonceResponse(
                    verifying_contract=contract,
                    signer=signer,
                    nonce=nonce,
                    domain=self.hub.typed_data_domain(contract),
                ).model_dump(mode="json"),
            )

    def _setup_relay_endpoints(self) -> None:
        @self.post("/polls/{poll}/vote")
        async def relay_vote(poll: str, body: VoteRequest):
            """Verify and relay a signed vote."""
            return await self._run_chain(VoteRequestEvent(
                poll=checked_address(poll, "poll"),
                signer=checked_address(body.signer, "signer"),
                option=body.option,
                signature=body.signature,
                nonce=body.nonce,
                already_voted_hint=body.already_voted_hint,
            ))

        @self.post("/polls/{poll}/claim")
        async def relay_claim(poll: str, body: ClaimRequest):
            """Verify and relay a signed reward claim."""
            return await self._run_chain(ClaimRequestEvent(
                poll=checked_address(poll, "poll"),
                signer=checked_address(body.signer, "signer"),
                signature=body.signature,
                nonce=body.nonce,
            ))

    async def _run_chain(self, initial_event: BaseEvent) -> JSONResponse:
        outcome = await EventChain(self.event_bus, self.depends).first_of(
            initial_event, (VerifyFailedEvent, RelayFailedEvent, RelayResultEvent)
        )
        if isinstance(outcome, RelayResultEvent):
            return JSONResponse(
                status_code=RELAY_STATUS_CODES[outcome.result.status],
                content=outcome.result.model_dump(mode="json"),
            )
        if outcome is not None:
            return JSONResponse(status_code=outcome.status_code, content=error_envelope(outcome.error))

        return JSONResponse(
            status_code=500,
            content=error_envelope({"error_class": "internal_error", "reason": "Relay produced no result"}),
        )

    def _setup_funding_endpoints(self) -> None:
        @self.post("/funding/plan")
        async def plan_funding(body: FundingPlanRequest):
            """Plan approval and funding for a reward-bearing poll."""
            draft = None
            if body.has_draft():
                draft = PollDraft(title=body.title, options=body.options, duration=body.duration)
            poll_factory = checked_address(body.poll_factory, "poll_factory") if body.poll_factory else None
            try:
                plan = await self.hub.plan_poll_funding(
                    checked_address(body.owner, "owner"),
                    poll_factory,
                    body.reward_per_voter,
                    body.vote_limit,
                    fund_amount=body.fund_amount,
                    draft=draft,
                )
            except ValueError as e:
                raise InvalidRequest(str(e)) from e
            return JSONResponse(
                status_code=200,
                content=FundingPlanResponse(
                    plan=plan.model_dump(mode="json"),
                    amounts=self._plan_amounts(plan),
                ).model_dump(mode="json"),
            )

        @self.post("/funding/execute")
        async def execute_funding(body: FundingExecuteRequest):
            """Run a funding plan with the owner's wallet-call signatures."""
            try:
                plan = FundingPlan.model_validate(body.plan)
            except ValueError as e:
                raise InvalidRequest(f"Malformed funding plan: {e}") from e
            try:
                outcome = await self.hub.execute_funding_plan(plan, body.approval_signature, body.funding_signature)
            except ValueError as e:
                raise InvalidRequest(str(e)) from e
            return JSONResponse(
                status_code=200 if outcome.is_success() else 409,
                content=outcome.model_dump(mode="json"),
            )

    def _plan_amounts(self, plan: FundingPlan) -> dict:
        decimals = self.hub.settings.token_decimals
        return {
            name: value_to_amount(value=getattr(plan, name), decimals=decimals)
            for name in (
                "reward_per_voter",
                "total_reward",
                "fund_amount",
                "platform_fee",
                "total_required",
                "wallet_balance",
            )
        }
