"""
EVM Meta-Transaction Verification

Server-side checks for user-signed actions before the relay spends gas on
them. Signatures are recovered in-process with ``eth_account``; the only
chain access is the nonce seed performed by the :class:`NonceRegistry`.

Checks run in this order and stop at the first failure:

1. **Action schema**: the action type must have a typed-data schema
   (``UnknownAction`` otherwise).
2. **Domain**: the signed domain must equal the relay's canonical domain for
   the verifying contract (``InvalidSignature`` otherwise).
3. **Signature**: the typed data rebuilt from the request must recover to the
   claimed signer, compared case-insensitively (``InvalidSignature``).
4. **Nonce**: the nonce must be the next expected value and is consumed in
   the same critical section (``NonceMismatch``).

Because the signature is checked before the nonce, altering any signed
field, the nonce included, surfaces as ``InvalidSignature``.
"""

from typing import Any, Dict, Type

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import is_address

from ...engine.exceptions import InvalidSignature, RelayError, UnknownAction
from ...schemas.bases import ActionType
from ...utils import logger
from .constants import RelaySettings
from .nonces import NonceKey, NonceRegistry
from .schemas import EVMECDSASignature, MetaTransactionRequest, VerifiedRequest
from .signatures import build_claim_reward_typed_data, build_vote_typed_data, wallet_call_digest
from .standards import EIP712Domain


def build_request_typed_data(request: MetaTransactionRequest, domain: EIP712Domain) -> Dict[str, Any]:
    """
    Rebuild the typed data a request claims to have signed.

    Raises:
        UnknownAction: If the action type has no schema.
        InvalidSignature: If the payload is missing a required field.
    """
    try:
        action = ActionType(request.action_type)
    except ValueError:
        raise UnknownAction(f"Unsupported action type '{request.action_type}'")

    if action == ActionType.VOTE:
        option = request.payload.get("option")
        if isinstance(option, bool) or not isinstance(option, int) or option < 0:
            raise InvalidSignature("Vote payload requires a non-negative integer 'option'")
        return build_vote_typed_data(
            domain=domain, voter=request.signer, option=option, nonce=request.nonce
        ).to_dict()

    return build_claim_reward_typed_data(
        domain=domain, claimer=request.signer, nonce=request.nonce
    ).to_dict()


def recover_typed_data_signer(typed_data: Dict[str, Any], signature: str) -> str:
    """
    Recover the address that signed ``typed_data``.

    Raises:
        InvalidSignature: If the signature is malformed or recovery fails.
    """
    try:
        sig = EVMECDSASignature.from_hex(signature)
        return Account.recover_message(encode_typed_data(full_message=typed_data), signature=sig.to_packed_hex())
    except Exception as e:
        raise InvalidSignature(f"Malformed signature: {e}") from e


def recover_wallet_call_signer(target: str, call_data: str, signature: str, value: int = 0) -> str:
    """
    Recover the EIP-191 signer of a smart-wallet ``execute`` call.

    Raises:
        InvalidSignature: If the signature is malformed or recovery fails.
    """
    try:
        sig = EVMECDSASignature.from_hex(signature)
        message = encode_defunct(primitive=wallet_call_digest(target, call_data, value))
        return Account.recover_message(message, signature=sig.to_packed_hex())
    except Exception as e:
        raise InvalidSignature(f"Malformed wallet call signature: {e}") from e


def verify_wallet_call_signature(
    *,
    owner: str,
    target: str,
    call_data: str,
    signature: str,
    value: int = 0,
) -> str:
    """
    Check that ``owner`` authorised a smart-wallet call.

    Returns:
        The recovered signer address.

    Raises:
        InvalidSignature: If the recovered address is not ``owner``.
    """
    recovered = recover_wallet_call_signer(target, call_data, signature, value)
    if recovered.lower() != owner.lower():
        logger.warning(f"Wallet call signature mismatch: recovered {recovered}, owner {owner}")
        raise InvalidSignature("Transaction not authorized by wallet owner")
    return recovered


class MetaTransactionVerifier:
    """
    Verifies user-signed requests and consumes their nonces.

    Example:
        verifier = MetaTransactionVerifier(settings, registry)
        verified = await verifier.verify(request)
    """

    def __init__(self, settings: RelaySettings, registry: NonceRegistry):
        self._settings = settings
        self._registry = registry

    async def verify(self, request: MetaTransactionRequest) -> VerifiedRequest:
        """
        Verify ``request`` and consume its nonce.

        Returns:
            VerifiedRequest carrying the recovered signer.

        Raises:
            UnknownAction: Unsupported action type.
            InvalidSignature: Domain mismatch, malformed signature or wrong signer.
            NonceMismatch: Nonce already used or never reached.
        """
        def _reject(exc_type: Type[RelayError], reason: str) -> RelayError:
            logger.info(
                f"Rejected {request.action_type} from {request.signer} "
                f"nonce={request.nonce}: {reason}"
            )
            return exc_type(reason)

        # ----------------------------------------------------------------
        # 1-2. Schema and domain
        # ----------------------------------------------------------------
        try:
            ActionType(request.action_type)
        except ValueError:
            raise _reject(UnknownAction, f"Unsupported action type '{request.action_type}'")

        if not is_address(request.signer):
            raise _reject(InvalidSignature, "Signer is not a valid address")
        if not is_address(request.verifying_contract):
            raise _reject(InvalidSignature, "Domain verifyingContract is not a valid address")

        try:
            domain = EIP712Domain.from_dict(request.domain)
        except (KeyError, ValueError, TypeError):
            raise _reject(InvalidSignature, "Malformed EIP-712 domain")

        expected = self._settings.domain(request.verifying_contract)
        if (
            domain.name != expected["name"]
            or domain.version != expected["version"]
            or domain.chainId != expected["chainId"]
        ):
            raise _reject(InvalidSignature, "Signed domain does not match this relay")

        # ----------------------------------------------------------------
        # 3. Signature recovery
        # ----------------------------------------------------------------
        typed_data = build_request_typed_data(request, domain)
        try:
            recovered = recover_typed_data_signer(typed_data, request.signature)
        except InvalidSignature as e:
            raise _reject(InvalidSignature, e.reason)
        if recovered.lower() != request.signer.lower():
            raise _reject(InvalidSignature, "Signature does not match signer")

        # ----------------------------------------------------------------
        # 4. Nonce (consumed atomically with acceptance)
        # ----------------------------------------------------------------
        key = NonceKey.of(request.verifying_contract, request.signer)
        await self._registry.consume(key, request.nonce)

        logger.debug(f"Verified {request.action_type} from {recovered} nonce={request.nonce}")
        return VerifiedRequest(request=request, recovered_signer=recovered)
