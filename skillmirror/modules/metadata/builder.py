"""
Metadata Builder
================

Purpose
-------
Render the metadata for the next on-chain update from a snapshot of the
authoritative state. Two artifacts come out of one snapshot:

- the **full document**, uploaded once to the content store and referenced
  by URI (name, symbol, description, image, every attribute, properties);
- the **on-chain payload**, the small part embedded in the update
  transaction itself. Its size is what the transaction ceiling bounds.

Detail Ladder
-------------
The on-chain payload is rendered at one of four detail levels, from most
to least verbose::

    FULL      name, uri, combat + total level, every skill
    DIRTY     name, uri, combat + total level, dirty skills only
    SUMMARY   name, uri, combat + total level
    URI_ONLY  uri

The update protocol starts at the configured level and steps down while
the transaction does not fit.

Determinism
-----------
Every function here is pure: the same snapshot always yields byte-identical
output. JSON is canonical (sorted keys, compact separators, UTF-8) and
attributes follow catalog order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence, Tuple

from skillmirror.core.config.config import Config
from skillmirror.modules.shared.constants import (
    METADATA_DESCRIPTION,
    METADATA_SYMBOL,
    MIN_LEVEL,
    SKILL_NAMES,
)

if TYPE_CHECKING:
    from skillmirror.database.models import CharacterAsset, SkillRecord


class DetailLevel(str, Enum):
    FULL = "full"
    DIRTY = "dirty"
    SUMMARY = "summary"
    URI_ONLY = "uri_only"

    def smaller(self) -> Optional[DetailLevel]:
        """Next rung down the ladder, or None at URI_ONLY."""
        order = list(DetailLevel)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None

    @classmethod
    def parse(cls, value: str) -> DetailLevel:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.DIRTY


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


# ============================================================================
# Snapshot
# ============================================================================


@dataclass(frozen=True)
class SkillSnapshot:
    name: str
    level: int
    experience: int
    dirty: bool


@dataclass(frozen=True)
class AssetSnapshot:
    """Immutable copy of the state one update run mirrors."""

    asset_id: str
    name: str
    image_uri: Optional[str]
    combat_level: int
    total_level: int
    state_version: int
    skills: Tuple[SkillSnapshot, ...] = field(default_factory=tuple)

    @classmethod
    def from_models(cls, asset: CharacterAsset, records: Sequence[SkillRecord]) -> AssetSnapshot:
        if asset.asset_id is None:
            raise ValueError("cannot snapshot an unresolved asset")

        by_name = {r.skill_name: r for r in records}
        skills = []
        for skill in SKILL_NAMES:
            record = by_name.get(skill)
            skills.append(
                SkillSnapshot(
                    name=skill,
                    level=record.level if record else MIN_LEVEL,
                    experience=record.experience if record else 0,
                    dirty=bool(record and record.pending_onchain_update),
                )
            )
        return cls(
            asset_id=asset.asset_id,
            name=asset.name,
            image_uri=asset.image_uri,
            combat_level=asset.combat_level,
            total_level=asset.total_level,
            state_version=asset.state_version,
            skills=tuple(skills),
        )

    @property
    def dirty_skills(self) -> Tuple[SkillSnapshot, ...]:
        return tuple(s for s in self.skills if s.dirty)


# ============================================================================
# Payload
# ============================================================================


@dataclass(frozen=True)
class MetadataPayload:
    """On-chain part of an update at one detail level."""

    detail: DetailLevel
    uri: str
    name: Optional[str] = None
    attributes: Tuple[Tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"uri": self.uri}
        if self.name is not None:
            body["name"] = self.name
        if self.attributes:
            body["attributes"] = [
                {"trait_type": trait, "value": value} for trait, value in self.attributes
            ]
        return body

    def encode(self) -> bytes:
        return canonical_json(self.to_dict())

    @property
    def size(self) -> int:
        return len(self.encode())


@dataclass(frozen=True)
class MetadataSettings:
    initial_detail: DetailLevel = DetailLevel.DIRTY
    version: str = "2.0.0"

    @classmethod
    def from_config(cls) -> MetadataSettings:
        return cls(
            initial_detail=DetailLevel.parse(Config.METADATA_INITIAL_DETAIL),
            version=Config.METADATA_VERSION,
        )


# ============================================================================
# Builder
# ============================================================================


def _trait(skill: str) -> str:
    return skill.capitalize()


class MetadataBuilder:
    """Pure renderer for metadata documents and on-chain payloads."""

    def __init__(self, settings: Optional[MetadataSettings] = None) -> None:
        self.settings = settings or MetadataSettings.from_config()

    @staticmethod
    def display_name(snapshot: AssetSnapshot) -> str:
        return f"{snapshot.name} (Combat {snapshot.combat_level})"

    def build_document(self, snapshot: AssetSnapshot) -> Dict[str, Any]:
        """Full JSON document for the content store."""
        attributes: List[Dict[str, str]] = [
            {"trait_type": "Version", "value": self.settings.version},
            {"trait_type": "Combat Level", "value": str(snapshot.combat_level)},
            {"trait_type": "Total Level", "value": str(snapshot.total_level)},
        ]
        attributes.extend(
            {"trait_type": _trait(s.name), "value": str(s.level)} for s in snapshot.skills
        )

        properties: Dict[str, Any] = {
            "asset_id": snapshot.asset_id,
            "state_version": snapshot.state_version,
        }
        document: Dict[str, Any] = {
            "name": self.display_name(snapshot),
            "symbol": METADATA_SYMBOL,
            "description": METADATA_DESCRIPTION,
            "attributes": attributes,
            "properties": properties,
        }
        if snapshot.image_uri:
            document["image"] = snapshot.image_uri
            properties["files"] = [{"uri": snapshot.image_uri, "type": "image/png"}]
        return document

    def encode_document(self, snapshot: AssetSnapshot) -> bytes:
        return canonical_json(self.build_document(snapshot))

    def build_payload(
        self,
        snapshot: AssetSnapshot,
        uri: str,
        detail: DetailLevel,
    ) -> MetadataPayload:
        """On-chain payload for ``snapshot`` at ``detail``."""
        if detail is DetailLevel.URI_ONLY:
            return MetadataPayload(detail=detail, uri=uri)

        attributes: List[Tuple[str, str]] = [
            ("Combat Level", str(snapshot.combat_level)),
            ("Total Level", str(snapshot.total_level)),
        ]
        if detail is DetailLevel.FULL:
            skills: Sequence[SkillSnapshot] = snapshot.skills
        elif detail is DetailLevel.DIRTY:
            skills = snapshot.dirty_skills
        else:
            skills = ()
        attributes.extend((_trait(s.name), str(s.level)) for s in skills)

        return MetadataPayload(
            detail=detail,
            uri=uri,
            name=self.display_name(snapshot),
            attributes=tuple(attributes),
        )

    def ladder(self, start: Optional[DetailLevel] = None) -> Iterator[DetailLevel]:
        """Detail levels from ``start`` (default: configured) down to URI_ONLY."""
        detail: Optional[DetailLevel] = start or self.settings.initial_detail
        while detail is not None:
            yield detail
            detail = detail.smaller()
