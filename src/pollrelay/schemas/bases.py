"""
Base Schema Models for the Poll Relay

This module defines the base model and the shared enums that every other
schema builds on.

Core Classes:
    - CanonicalModel: Pydantic base model with deterministic JSON serialization
    - ActionType: Meta-transaction actions the relay knows how to verify
    - RelayStatus: Terminal and non-terminal outcomes of a relayed transaction
    - ContractKind: Contract families the relay calls, used to resolve ABIs

Dependencies:
    - pydantic: For data validation and serialization
"""

import json
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


class CanonicalModel(BaseModel):
    """
    Pydantic base model with canonical JSON serialization.

    The JSON form has sorted keys and no extra whitespace, so two equal
    models always serialize to the same string. Relay results and audit
    records are logged and compared in this form.

    Example:
        class MyModel(CanonicalModel):
            name: str
            value: int

        MyModel(name="test", value=123).to_canonical_json()
        # '{"name":"test","value":123}'
    """

    model_config = ConfigDict(populate_by_name=True)

    def to_canonical_json(self) -> str:
        """
        Convert model to a canonical JSON string.

        Returns:
            str: JSON string with sorted keys and compact separators.
        """
        data = self.model_dump(mode="json")
        return json.dumps(
            data,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Returns:
            Dict[str, Any]: Dictionary with all model fields.
        """
        return self.model_dump()


class ActionType(str, Enum):
    """Signed actions accepted by the relay."""
    VOTE = "vote"
    CLAIM_REWARD = "claim_reward"


class RelayStatus(str, Enum):
    """
    Outcome of a relayed transaction.

    CONFIRMED, REVERTED and SUBMISSION_FAILED are terminal and mutually
    exclusive. PENDING means the receipt did not arrive in time and the
    transaction is still being tracked.
    """
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    SUBMISSION_FAILED = "submission_failed"
    PENDING = "pending"


class ContractKind(str, Enum):
    """Contract families the relay interacts with."""
    POLL = "poll"
    POLL_FACTORY = "poll_factory"
    WALLET_FACTORY = "wallet_factory"
    SMART_WALLET = "smart_wallet"
    ERC20 = "erc20"
