from dataclasses import dataclass, field
from typing import Dict, Any, List


# -----------------------------
# EIP-712 Domain
# -----------------------------

@dataclass
class EIP712Domain:
    """
    EIP-712 domain separator.
    Binds a signature to one poll contract on one chain.
    """
    name: str
    version: str
    chainId: int
    verifyingContract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chainId,
            "verifyingContract": self.verifyingContract,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EIP712Domain":
        """
        Build a domain from a wire dict.

        Raises:
            KeyError: If a domain field is missing.
            ValueError: If chainId is not an integer.
        """
        return cls(
            name=str(data["name"]),
            version=str(data["version"]),
            chainId=int(data["chainId"]),
            verifyingContract=str(data["verifyingContract"]),
        )


EIP712_DOMAIN_TYPE: List[Dict[str, str]] = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


# -----------------------------
# Vote
# -----------------------------

@dataclass
class VoteMessage:
    """
    Message payload for a gasless vote.

    Field order matches the on-chain ``Vote`` type hash and must not change.
    """
    voter: str
    option: int
    nonce: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "voter": self.voter,
            "option": self.option,
            "nonce": self.nonce,
        }


@dataclass
class VoteTypedData:
    """Container for ``Vote`` typed data usable with EIP-712 signing routines."""
    domain: EIP712Domain
    message: VoteMessage
    types: Dict[str, List[Dict[str, str]]] = field(default_factory=lambda: {
        "EIP712Domain": EIP712_DOMAIN_TYPE,
        "Vote": [
            {"name": "voter", "type": "address"},
            {"name": "option", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
        ],
    })
    primaryType: str = "Vote"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": self.types,
            "domain": self.domain.to_dict(),
            "primaryType": self.primaryType,
            "message": self.message.to_dict(),
        }


# -----------------------------
# ClaimReward
# -----------------------------

@dataclass
class ClaimRewardMessage:
    """Message payload for a gasless reward claim."""
    claimer: str
    nonce: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimer": self.claimer,
            "nonce": self.nonce,
        }


@dataclass
class ClaimRewardTypedData:
    """Container for ``ClaimReward`` typed data usable with EIP-712 signing routines."""
    domain: EIP712Domain
    message: ClaimRewardMessage
    types: Dict[str, List[Dict[str, str]]] = field(default_factory=lambda: {
        "EIP712Domain": EIP712_DOMAIN_TYPE,
        "ClaimReward": [
            {"name": "claimer", "type": "address"},
            {"name": "nonce", "type": "uint256"},
        ],
    })
    primaryType: str = "ClaimReward"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": self.types,
            "domain": self.domain.to_dict(),
            "primaryType": self.primaryType,
            "message": self.message.to_dict(),
        }
