"""
On-chain module: collaborator clients, tagged results and the proof-gated
update protocol.
"""

from .results import (
    Capabilities,
    MerkleProof,
    NotFound,
    Ok,
    Result,
    Stale,
    SubmitReceipt,
    TooLarge,
    TransactionStatus,
    Transient,
)
from .clients import (
    ContentStoreClient,
    HttpCollaborator,
    LedgerClient,
    LookupClient,
    ProofIndexClient,
)
from .context import ProtocolSettings, Signer, UpdateContext
from .capabilities import CapabilityCheck
from .protocol import UpdateOutcome, UpdateProtocol, UpdateStatus

__all__ = [
    "Ok",
    "NotFound",
    "Stale",
    "TooLarge",
    "Transient",
    "Result",
    "Capabilities",
    "MerkleProof",
    "SubmitReceipt",
    "TransactionStatus",
    "HttpCollaborator",
    "LedgerClient",
    "ProofIndexClient",
    "LookupClient",
    "ContentStoreClient",
    "Signer",
    "ProtocolSettings",
    "UpdateContext",
    "CapabilityCheck",
    "UpdateProtocol",
    "UpdateOutcome",
    "UpdateStatus",
]
