"""
Built-in event handlers for the gasless relay workflow.

Implements the core flow: signature and nonce verification, then wallet
deployment and relay. Relay errors raised by the hub become failure events
carrying the error payload and the HTTP status it maps to.
"""

from ..engine.events import (
    EventBus,
    Dependencies,
    VoteRequestEvent,
    ClaimRequestEvent,
    VerifySuccessEvent,
    VerifyFailedEvent,
    RelayResultEvent,
    RelayFailedEvent,
)
from ..engine.exceptions import (
    ConfigurationError,
    ContractError,
    DeploymentPending,
    DeploymentVerificationFailed,
    InsufficientBalance,
    InvalidRequest,
    NetworkError,
    NonceMismatch,
    RelayError,
    RpcTimeout,
    SignatureError,
)
from ..schemas.bases import ActionType, RelayStatus
from ..utils import logger


# ==================== Status Mapping ====================

def http_status_for(error: RelayError) -> int:
    """HTTP status code for a relay error."""
    if isinstance(error, NonceMismatch):
        return 409
    if isinstance(error, (SignatureError, InvalidRequest)):
        return 400
    if isinstance(error, InsufficientBalance):
        return 402
    if isinstance(error, ContractError):
        return 409
    if isinstance(error, DeploymentPending):
        return 202
    if isinstance(error, RpcTimeout):
        return 504
    if isinstance(error, (NetworkError, DeploymentVerificationFailed)):
        return 502
    if isinstance(error, ConfigurationError):
        return 503
    return 500


RELAY_STATUS_CODES = {
    RelayStatus.CONFIRMED: 200,
    RelayStatus.PENDING: 202,
    RelayStatus.REVERTED: 409,
    RelayStatus.SUBMISSION_FAILED: 502,
}


# ==================== Event Handlers ====================

async def handle_vote_request(
    event: VoteRequestEvent,
    deps: Dependencies
) -> VerifySuccessEvent | VerifyFailedEvent:
    """Verify a signed vote."""
    hub = deps.hub
    if event.already_voted_hint:
        logger.info(f"Advisory: {event.signer} may have voted on {event.poll} already; chain decides")
    try:
        nonce = event.nonce if event.nonce is not None else await hub.get_nonce(event.poll, event.signer)
        request = hub.build_request(
            ActionType.VOTE.value, event.poll, event.signer, event.signature, nonce, {"option": event.option}
        )
        verified = await hub.verify(request)
    except RelayError as e:
        return VerifyFailedEvent(error=e.to_payload(), status_code=http_status_for(e))
    return VerifySuccessEvent(verified=verified)


async def handle_claim_request(
    event: ClaimRequestEvent,
    deps: Dependencies
) -> VerifySuccessEvent | VerifyFailedEvent:
    """Verify a signed reward claim."""
    hub = deps.hub
    try:
        nonce = event.nonce if event.nonce is not None else await hub.get_nonce(event.poll, event.signer)
        request = hub.build_request(ActionType.CLAIM_REWARD.value, event.poll, event.signer, event.signature, nonce)
        verified = await hub.verify(request)
    except RelayError as e:
        return VerifyFailedEvent(error=e.to_payload(), status_code=http_status_for(e))
    return VerifySuccessEvent(verified=verified)


async def handle_verify_success(
    event: VerifySuccessEvent,
    deps: Dependencies
) -> RelayResultEvent | RelayFailedEvent:
    """Deploy the signer's wallet if needed and relay the verified request."""
    try:
        result = await deps.hub.relay_verified(event.verified)
    except RelayError as e:
        logger.error(f"Relay of {event.verified.request.action_type} aborted: {e.error_class.value}: {e.reason}")
        return RelayFailedEvent(error=e.to_payload(), status_code=http_status_for(e))
    return RelayResultEvent(result=result, verified=event.verified)


async def log_relay_result(event: RelayResultEvent, deps: Dependencies) -> None:
    request = event.verified.request
    logger.info(
        f"{request.action_type} for {request.signer} on {request.verifying_contract}: "
        f"{event.result.status.value} tx={event.result.tx_hash}"
    )


# ==================== Event Bus Setup ====================

def setup_event_bus() -> EventBus:
    """Initialize event bus with built-in handlers."""
    event_bus = EventBus()

    event_bus.subscribe(VoteRequestEvent, handle_vote_request)
    event_bus.subscribe(ClaimRequestEvent, handle_claim_request)
    event_bus.subscribe(VerifySuccessEvent, handle_verify_success)
    event_bus.hook(RelayResultEvent, log_relay_result)

    return event_bus
