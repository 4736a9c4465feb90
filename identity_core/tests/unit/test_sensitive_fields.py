"""Tests for the encrypt-on-write / decrypt-on-read repository."""

from __future__ import annotations

import pytest
from identity_core.config import DecryptFailurePolicy
from identity_core.errors import DecryptionFailure, DuplicateIdentity, StaleWriteConflict
from identity_core.security.field_codec import DecryptStatus, FieldCodec, hash_field
from identity_core.state.sensitive_fields import SensitiveFieldRepository
from sqlalchemy import update

OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"


@pytest.fixture
def customers(session, codec) -> SensitiveFieldRepository:
    return SensitiveFieldRepository.for_table(session, codec, "customers")


@pytest.fixture
def suppliers(session, codec) -> SensitiveFieldRepository:
    return SensitiveFieldRepository.for_table(session, codec, "suppliers")


class TestSeal:
    def test_seal_encrypts_and_indexes(self, account_fields, codec: FieldCodec) -> None:
        sealed = account_fields.seal({"name": "Ana", "phone": "11 99999-0000", "tax_id": "123"})
        assert sealed["name"] == "Ana"
        assert codec.is_encrypted(sealed["phone"])
        assert codec.decrypt(sealed["phone"]) == "11 99999-0000"
        assert sealed["phone_hash"] == hash_field("11 99999-0000")
        assert sealed["tax_id_hash"] == hash_field("123")

    def test_seal_blank_is_null(self, account_fields) -> None:
        sealed = account_fields.seal({"phone": ""})
        assert sealed["phone"] is None
        assert sealed["phone_hash"] is None

    def test_seal_whitespace_is_null(self, account_fields) -> None:
        sealed = account_fields.seal({"phone": "   ", "tax_id": "\t"})
        assert sealed["phone"] is None
        assert sealed["phone_hash"] is None
        assert sealed["tax_id"] is None
        assert sealed["tax_id_hash"] is None

    def test_seal_leaves_absent_fields_alone(self, account_fields) -> None:
        assert "tax_id" not in account_fields.seal({"phone": "1"})


class TestCreateAndFind:
    @pytest.mark.asyncio
    async def test_create_and_find_by_field(self, customers) -> None:
        created = await customers.create(store_id="s1", name="Bia", phone="11 98888-7777")
        found = await customers.find_by_field("phone", "  11 98888-7777 ", store_id="s1")
        assert found is not None
        assert found.id == created.id

    @pytest.mark.asyncio
    async def test_find_respects_scope(self, customers) -> None:
        await customers.create(store_id="s1", name="Bia", phone="11 98888-7777")
        assert await customers.find_by_field("phone", "11 98888-7777", store_id="s2") is None

    @pytest.mark.asyncio
    async def test_find_by_unknown_value(self, customers) -> None:
        assert await customers.find_by_field("phone", "nothing") is None
        assert await customers.find_by_field("phone", "") is None

    @pytest.mark.asyncio
    async def test_find_by_non_sensitive_field_is_refused(self, customers) -> None:
        with pytest.raises(ValueError):
            await customers.find_by_field("name", "Bia")

    @pytest.mark.asyncio
    async def test_ensure_unique(self, account_fields, make_account) -> None:
        first = await make_account("a@example.com", tax_id="123.456.789-09")
        with pytest.raises(DuplicateIdentity) as exc_info:
            await account_fields.ensure_unique("tax_id", "123.456.789-09")
        assert exc_info.value.field == "tax_id"
        # The owner itself is not a duplicate.
        await account_fields.ensure_unique("tax_id", "123.456.789-09", exclude_id=first.id)
        await account_fields.ensure_unique("tax_id", None)

    @pytest.mark.asyncio
    async def test_whitespace_values_never_collide(self, account_fields, make_account) -> None:
        await make_account("a@example.com", phone="   ")
        await account_fields.ensure_unique("phone", " ")
        second = await make_account("b@example.com", phone=" ")
        assert second.phone is None
        assert second.phone_hash is None

    @pytest.mark.asyncio
    async def test_supplier_phone_is_sealed(self, suppliers, codec: FieldCodec) -> None:
        supplier = await suppliers.create(store_id="s1", name="Acme", contact_name="Rui", phone="3333-4444")
        assert codec.is_encrypted(supplier.phone)
        assert supplier.phone_hash == hash_field("3333-4444")


class TestWrite:
    @pytest.mark.asyncio
    async def test_unchanged_value_is_noop(self, customers) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        stored, version = customer.phone, customer.version

        assert await customers.write(customer, "phone", "1111") is False
        assert customer.phone == stored
        assert customer.version == version

    @pytest.mark.asyncio
    async def test_changed_value_reencrypts_and_reindexes(self, customers, codec: FieldCodec) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")

        assert await customers.write(customer, "phone", "2222") is True
        assert codec.decrypt(customer.phone) == "2222"
        assert customer.phone_hash == hash_field("2222")
        assert customer.version == 2
        assert await customers.find_by_field("phone", "1111") is None

    @pytest.mark.asyncio
    async def test_clearing_sets_both_columns_null(self, customers) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        assert await customers.write(customer, "phone", None) is True
        assert customer.phone is None
        assert customer.phone_hash is None

    @pytest.mark.asyncio
    async def test_write_many_mixes_plain_and_sensitive(self, customers) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        changed = await customers.write_many(customer, {"name": "Beatriz", "phone": "1111"})
        assert changed == ["name"]
        assert customer.name == "Beatriz"

    @pytest.mark.asyncio
    async def test_unchanged_legacy_value_is_sealed(self, customers, session, codec: FieldCodec) -> None:
        customer = await customers.create(store_id="s1", name="Bia")
        customer.phone = "1111"
        await session.flush()

        assert await customers.write(customer, "phone", "1111") is True
        assert codec.is_encrypted(customer.phone)
        assert codec.decrypt(customer.phone) == "1111"
        assert customer.phone_hash == hash_field("1111")

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        await session.execute(
            update(type(customer))
            .where(type(customer).id == customer.id)
            .values(version=5)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(StaleWriteConflict):
            await customers.write(customer, "phone", "2222")

    @pytest.mark.asyncio
    async def test_duplicate_unique_blind_index(self, account_fields, make_account) -> None:
        await make_account("a@example.com", phone="1111")
        other = await make_account("b@example.com", phone="2222")
        with pytest.raises(DuplicateIdentity):
            await account_fields.write(other, "phone", "1111")


class TestReadForDisplay:
    @pytest.mark.asyncio
    async def test_display_decrypts_and_strips(self, account_fields, make_account) -> None:
        account = await make_account(phone="11 99999-0000", tax_id="123")
        view = account_fields.read_for_display(account)
        assert view["phone"] == "11 99999-0000"
        assert view["tax_id"] == "123"
        assert view["email"] == "ana@example.com"
        for hidden in ("phone_hash", "tax_id_hash", "password_hash", "version"):
            assert hidden not in view

    @pytest.mark.asyncio
    async def test_legacy_value_displayed_as_is(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia")
        customer.phone = "legacy 1111"
        await session.flush()
        assert customers.read_for_display(customer)["phone"] == "legacy 1111"

    @pytest.mark.asyncio
    async def test_undecryptable_degrades_to_none(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia")
        customer.phone = FieldCodec(OTHER_KEY).encrypt("1111")
        await session.flush()
        view = customers.read_for_display(customer)
        assert view["phone"] is None
        assert view["name"] == "Bia"

    @pytest.mark.asyncio
    async def test_undecryptable_raises_under_raise_policy(self, session, codec) -> None:
        strict = SensitiveFieldRepository.for_table(session, codec, "customers", policy=DecryptFailurePolicy.RAISE)
        customer = await strict.create(store_id="s1", name="Bia")
        customer.phone = FieldCodec(OTHER_KEY).encrypt("1111")
        await session.flush()
        with pytest.raises(DecryptionFailure):
            strict.read_for_display(customer)

    @pytest.mark.asyncio
    async def test_reveal_and_classify(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        assert customers.reveal(customer, "phone").value == "1111"
        assert customers.classify(customer) == {"phone": DecryptStatus.DECRYPTED}
        customer.phone = None
        await session.flush()
        assert customers.classify(customer) == {"phone": None}


class TestSealLegacy:
    @pytest.mark.asyncio
    async def test_legacy_plaintext_is_sealed(self, customers, session, codec: FieldCodec) -> None:
        customer = await customers.create(store_id="s1", name="Bia")
        customer.phone = "1111"
        await session.flush()

        assert await customers.seal_legacy(customer) == ["phone"]
        assert codec.is_encrypted(customer.phone)
        assert customer.phone_hash == hash_field("1111")
        assert (await customers.find_by_field("phone", "1111")).id == customer.id

    @pytest.mark.asyncio
    async def test_encrypted_fields_are_left_alone(self, customers) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        stored = customer.phone
        assert await customers.seal_legacy(customer) == []
        assert customer.phone == stored

    @pytest.mark.asyncio
    async def test_missing_index_is_backfilled(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        customer.phone_hash = None
        await session.flush()
        assert await customers.seal_legacy(customer) == ["phone"]
        assert customer.phone_hash == hash_field("1111")

    @pytest.mark.asyncio
    async def test_legacy_changes_reports_backfill(self, customers, session) -> None:
        customer = await customers.create(store_id="s1", name="Bia", phone="1111")
        customer.phone_hash = None
        await session.flush()

        fields, values = customers.legacy_changes(customer)
        assert fields == ["phone"]
        assert values == {"phone_hash": hash_field("1111")}
        assert customer.phone_hash is None

    @pytest.mark.asyncio
    async def test_shared_legacy_value_is_not_sealed_twice(self, account_fields, make_account, session) -> None:
        first = await make_account("a@example.com")
        second = await make_account("b@example.com")
        first.phone = "555-0100"
        second.phone = "555-0100"
        await session.flush()

        assert await account_fields.seal_legacy(first) == ["phone"]
        with pytest.raises(DuplicateIdentity) as exc_info:
            await account_fields.seal_legacy(second)
        assert exc_info.value.field == "phone"
        assert second.phone == "555-0100"
        assert second.phone_hash is None
