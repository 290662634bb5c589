"""
Startup capability check for the external collaborators.

Each HTTP collaborator advertises ``GET /capabilities -> {version, features[]}``.
The worker verifies once, before it processes anything, that every required
collaborator speaks a supported major version and offers the features the
mirror pipeline calls. Anything else fails fast with
``IncompatibleBackendError`` instead of surfacing per request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from skillmirror.core.exceptions import IncompatibleBackendError
from skillmirror.core.logging.logger import get_logger
from skillmirror.modules.onchain.clients import HttpCollaborator
from skillmirror.modules.onchain.results import Capabilities, NotFound, Ok

logger = get_logger(__name__)


@dataclass(frozen=True)
class BackendRequirement:
    name: str
    client: HttpCollaborator
    features: FrozenSet[str]
    supported_major_versions: FrozenSet[int] = frozenset({1})
    optional: bool = False


LEDGER_FEATURES = frozenset({"update_metadata", "transaction_status"})
INDEX_FEATURES = frozenset({"getAssetProof", "getAsset", "searchAssets"})
CONTENT_STORE_FEATURES = frozenset({"upload"})
LOOKUP_FEATURES = frozenset({"parse_transactions"})


class CapabilityCheck:
    """
    One-time compatibility check against the configured collaborators.

    Usage:
        >>> check = CapabilityCheck.for_clients(ledger=ledger, index=index, content_store=store)
        >>> await check.verify()
    """

    def __init__(self, requirements: List[BackendRequirement]) -> None:
        self.requirements = requirements

    @classmethod
    def for_clients(
        cls,
        ledger: HttpCollaborator,
        index: HttpCollaborator,
        content_store: HttpCollaborator,
        lookup: Optional[HttpCollaborator] = None,
    ) -> CapabilityCheck:
        requirements = [
            BackendRequirement("ledger", ledger, LEDGER_FEATURES),
            BackendRequirement("index", index, INDEX_FEATURES),
            BackendRequirement("content_store", content_store, CONTENT_STORE_FEATURES),
        ]
        if lookup is not None:
            requirements.append(BackendRequirement("lookup", lookup, LOOKUP_FEATURES, optional=True))
        return cls(requirements)

    async def verify(self) -> Dict[str, Capabilities]:
        """
        Query every collaborator.

        Returns:
            Capabilities of every compatible collaborator, by name

        Raises:
            IncompatibleBackendError: A required collaborator is unreachable,
                on an unsupported major version, or missing features
        """
        verified: Dict[str, Capabilities] = {}
        for requirement in self.requirements:
            try:
                verified[requirement.name] = await self._check(requirement)
            except IncompatibleBackendError as exc:
                if not requirement.optional:
                    logger.critical(
                        "Collaborator incompatible",
                        extra={"backend": requirement.name, "error": exc.message},
                    )
                    raise
                logger.warning(
                    "Optional collaborator unavailable; continuing without it",
                    extra={"backend": requirement.name, "error": exc.message},
                )

        logger.info(
            "Collaborator capabilities verified",
            extra={"backends": {name: caps.version for name, caps in verified.items()}},
        )
        return verified

    async def _check(self, requirement: BackendRequirement) -> Capabilities:
        result = await requirement.client.get_capabilities()
        if isinstance(result, NotFound):
            raise IncompatibleBackendError(requirement.name, "capabilities endpoint not available")
        if not isinstance(result, Ok):
            raise IncompatibleBackendError(requirement.name, f"unreachable: {result.reason}")

        capabilities = result.value
        major = capabilities.major_version
        if major not in requirement.supported_major_versions:
            raise IncompatibleBackendError(
                requirement.name,
                f"unsupported version {capabilities.version}",
            )

        missing = requirement.features - capabilities.features
        if missing:
            raise IncompatibleBackendError(
                requirement.name,
                "missing required features",
                missing=sorted(missing),
            )
        return capabilities
