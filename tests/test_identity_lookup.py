"""
Tests for safehaven/services/identity_lookup.py
"""
import uuid
from unittest.mock import AsyncMock

from safehaven.models.identity_mapping import IdentityMapping
from safehaven.services.identity_lookup import resolve_related_entity_id


async def _mapping(db, provider_user_id="prov-1") -> IdentityMapping:
    mapping = IdentityMapping(provider_user_id=provider_user_id, internal_user_id="internal-1")
    db.add(mapping)
    await db.commit()
    return mapping


class TestResolveRelatedEntityId:
    async def test_by_provider_user_id(self, db):
        mapping = await _mapping(db)
        assert await resolve_related_entity_id(db, {"user_id": "prov-1"}) == mapping.id

    async def test_by_explicit_mapping_id(self, db):
        mapping = await _mapping(db)
        payload = {"identity_mapping_id": str(mapping.id)}
        assert await resolve_related_entity_id(db, payload) == mapping.id

    async def test_unknown_mapping_id_falls_back_to_user(self, db):
        mapping = await _mapping(db)
        payload = {"identity_mapping_id": str(uuid.uuid4()), "user_id": "prov-1"}
        assert await resolve_related_entity_id(db, payload) == mapping.id

    async def test_malformed_mapping_id_ignored(self, db):
        assert await resolve_related_entity_id(db, {"identity_mapping_id": "not-a-uuid"}) is None

    async def test_unknown_user(self, db):
        assert await resolve_related_entity_id(db, {"user_id": "nobody"}) is None

    async def test_no_user_in_payload(self, db):
        assert await resolve_related_entity_id(db, {"type": "identity.created"}) is None

    async def test_lookup_error_is_swallowed(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("db gone"))

        assert await resolve_related_entity_id(mock_db, {"user_id": "prov-1"}) is None
        mock_db.rollback.assert_awaited_once()
