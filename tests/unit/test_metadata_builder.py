"""
Unit tests for MetadataBuilder.

Tests the detail ladder, the full document and determinism of the encoding.
"""

import json

import pytest

from skillmirror.modules.metadata.builder import (
    AssetSnapshot,
    DetailLevel,
    MetadataBuilder,
    MetadataSettings,
    SkillSnapshot,
    canonical_json,
)
from skillmirror.modules.shared.constants import METADATA_SYMBOL, SKILL_NAMES

pytestmark = pytest.mark.unit

URI = "https://content.test/blobs/1"


@pytest.fixture
def builder() -> MetadataBuilder:
    return MetadataBuilder(MetadataSettings(initial_detail=DetailLevel.DIRTY, version="2.0.0"))


@pytest.fixture
def snapshot() -> AssetSnapshot:
    skills = tuple(
        SkillSnapshot(
            name=skill,
            level=2 if skill in ("mining", "luck") else 1,
            experience=85 if skill in ("mining", "luck") else 0,
            dirty=skill in ("mining", "luck"),
        )
        for skill in SKILL_NAMES
    )
    return AssetSnapshot(
        asset_id="7EYnhQoR9YM3N7UoaKRoA44Uy8JeaZV3qyouov87awMs",
        name="Aria",
        image_uri="https://content.test/portraits/aria.png",
        combat_level=1,
        total_level=18,
        state_version=2,
        skills=skills,
    )


class TestDetailLadder:
    """Test ladder order and parsing."""

    def test_ladder_from_full(self, builder):
        assert list(builder.ladder(DetailLevel.FULL)) == [
            DetailLevel.FULL,
            DetailLevel.DIRTY,
            DetailLevel.SUMMARY,
            DetailLevel.URI_ONLY,
        ]

    def test_ladder_defaults_to_configured_start(self, builder):
        assert next(builder.ladder()) is DetailLevel.DIRTY

    def test_smallest_rung_has_no_successor(self):
        assert DetailLevel.URI_ONLY.smaller() is None

    @pytest.mark.parametrize(
        "raw,expected",
        [("full", DetailLevel.FULL), (" SUMMARY ", DetailLevel.SUMMARY), ("bogus", DetailLevel.DIRTY)],
    )
    def test_parse(self, raw, expected):
        assert DetailLevel.parse(raw) is expected


class TestPayload:
    """Test the on-chain payload at each rung."""

    def test_full_lists_every_skill(self, builder, snapshot):
        payload = builder.build_payload(snapshot, URI, DetailLevel.FULL)

        traits = [trait for trait, _ in payload.attributes]
        assert traits[:2] == ["Combat Level", "Total Level"]
        assert len(traits) == 2 + len(SKILL_NAMES)

    def test_dirty_lists_only_dirty_skills(self, builder, snapshot):
        payload = builder.build_payload(snapshot, URI, DetailLevel.DIRTY)

        assert payload.attributes == (
            ("Combat Level", "1"),
            ("Total Level", "18"),
            ("Mining", "2"),
            ("Luck", "2"),
        )
        assert payload.name == "Aria (Combat 1)"

    def test_summary_has_only_aggregates(self, builder, snapshot):
        payload = builder.build_payload(snapshot, URI, DetailLevel.SUMMARY)

        assert [t for t, _ in payload.attributes] == ["Combat Level", "Total Level"]

    def test_uri_only(self, builder, snapshot):
        payload = builder.build_payload(snapshot, URI, DetailLevel.URI_ONLY)

        assert payload.to_dict() == {"uri": URI}

    def test_sizes_shrink_down_the_ladder(self, builder, snapshot):
        sizes = [builder.build_payload(snapshot, URI, d).size for d in builder.ladder(DetailLevel.FULL)]

        assert sizes == sorted(sizes, reverse=True)
        assert len(set(sizes)) == len(sizes)

    def test_payload_is_deterministic(self, builder, snapshot):
        first = builder.build_payload(snapshot, URI, DetailLevel.DIRTY).encode()
        second = builder.build_payload(snapshot, URI, DetailLevel.DIRTY).encode()

        assert first == second


class TestDocument:
    """Test the full content-store document."""

    def test_document_fields(self, builder, snapshot):
        document = builder.build_document(snapshot)

        assert document["name"] == "Aria (Combat 1)"
        assert document["symbol"] == METADATA_SYMBOL
        assert document["image"] == snapshot.image_uri
        assert document["properties"]["asset_id"] == snapshot.asset_id
        assert document["properties"]["state_version"] == 2
        assert document["properties"]["files"][0]["uri"] == snapshot.image_uri

    def test_attribute_order(self, builder, snapshot):
        attributes = builder.build_document(snapshot)["attributes"]

        assert [a["trait_type"] for a in attributes[:3]] == ["Version", "Combat Level", "Total Level"]
        assert [a["trait_type"] for a in attributes[3:]] == [s.capitalize() for s in SKILL_NAMES]
        assert all(isinstance(a["value"], str) for a in attributes)

    def test_document_without_image(self, builder, snapshot):
        from dataclasses import replace

        document = builder.build_document(replace(snapshot, image_uri=None))

        assert "image" not in document
        assert "files" not in document["properties"]

    def test_encoding_is_canonical(self, builder, snapshot):
        encoded = builder.encode_document(snapshot)

        assert encoded == canonical_json(json.loads(encoded))
        assert b": " not in encoded and b", " not in encoded
