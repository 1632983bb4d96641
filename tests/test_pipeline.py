"""Tests for whole-document encryption and decryption."""

from __future__ import annotations

import copy
import secrets

import pytest

from field_encryption import (
    ClientEncryption,
    DecryptionError,
    DocumentTransformer,
    EncryptedBinary,
    FieldCipher,
    ProviderError,
    SchemaMismatchError,
    SerializationError,
    TransformState,
    compile_schema,
)
from field_encryption.pipeline import DocumentTransform


@pytest.fixture
def transformer(client: ClientEncryption) -> DocumentTransformer:
    return client.transformer


@pytest.fixture
def compiled(patient_schema):
    return compile_schema(patient_schema)


def patient() -> dict:
    return {
        "name": "Jon Doe",
        "ssn": 241014209,
        "bloodType": "AB+",
        "medicalRecords": [{"weight": 180, "bloodPressure": "120/80"}],
        "insurance": {"provider": "MaestCare", "policyNumber": 123142},
    }


async def test_patient_round_trip(transformer, compiled):
    original = patient()
    encrypted = await transformer.encrypt_for_write(original, compiled)

    assert encrypted["name"] == "Jon Doe"
    assert encrypted["insurance"]["provider"] == "MaestCare"
    for value in (
        encrypted["ssn"],
        encrypted["bloodType"],
        encrypted["medicalRecords"],
        encrypted["insurance"]["policyNumber"],
    ):
        assert isinstance(value, EncryptedBinary)

    assert await transformer.decrypt_for_read(encrypted, compiled) == original


async def test_ssn_is_stable_and_blood_type_is_not(transformer, compiled):
    doc = {"ssn": 241014209, "bloodType": "AB+"}
    first = await transformer.encrypt_for_write(doc, compiled)
    second = await transformer.encrypt_for_write(doc, compiled)

    assert first["ssn"] == second["ssn"]
    assert first["bloodType"] != second["bloodType"]
    assert await transformer.decrypt_for_read(first, compiled) == doc
    assert await transformer.decrypt_for_read(second, compiled) == doc


async def test_array_is_one_blob(transformer, compiled):
    encrypted = await transformer.encrypt_for_write(
        {"medicalRecords": [{"weight": 180}]}, compiled
    )
    assert isinstance(encrypted["medicalRecords"], EncryptedBinary)
    decrypted = await transformer.decrypt_for_read(encrypted)
    assert decrypted == {"medicalRecords": [{"weight": 180}]}


async def test_field_order_is_preserved(transformer, compiled):
    original = patient()
    encrypted = await transformer.encrypt_for_write(original, compiled)
    assert list(encrypted) == list(original)
    assert list(encrypted["insurance"]) == ["provider", "policyNumber"]
    assert list(await transformer.decrypt_for_read(encrypted)) == list(original)


async def test_missing_fields_are_skipped(transformer, compiled):
    assert await transformer.encrypt_for_write({"name": "Jane"}, compiled) == {"name": "Jane"}


async def test_input_document_is_not_mutated(transformer, compiled):
    original = patient()
    snapshot = copy.deepcopy(original)
    await transformer.encrypt_for_write(original, compiled)
    assert original == snapshot


async def test_scalar_where_object_expected_fails_whole_document(transformer, compiled):
    doc = patient()
    doc["insurance"] = "MaestCare"
    with pytest.raises(SchemaMismatchError, match="insurance"):
        await transformer.encrypt_for_write(doc, compiled)


async def test_type_mismatch_reports_path(transformer, compiled):
    doc = patient()
    doc["insurance"]["policyNumber"] = "123142"
    with pytest.raises(SchemaMismatchError, match="insurance.policyNumber"):
        await transformer.encrypt_for_write(doc, compiled)


async def test_already_encrypted_values_are_kept(transformer, compiled):
    once = await transformer.encrypt_for_write({"bloodType": "AB+"}, compiled)
    twice = await transformer.encrypt_for_write(once, compiled)
    assert twice["bloodType"] == once["bloodType"]


async def test_decrypt_without_schema(transformer, compiled):
    encrypted = await transformer.encrypt_for_write(patient(), compiled)
    assert await transformer.decrypt_for_read(encrypted) == patient()


async def test_decrypt_inside_arrays(client, data_key_id):
    blob = await client.encrypt("x", "Random", key_id=data_key_id)
    doc = {"history": [{"note": blob}, blob, 3]}
    assert await client.transformer.decrypt_for_read(doc) == {"history": [{"note": "x"}, "x", 3]}


async def test_decrypted_value_checked_against_declared_type(client, data_key_id, compiled):
    doc = {"ssn": await client.encrypt("not-a-number", "Random", key_id=data_key_id)}
    with pytest.raises(DecryptionError):
        await client.transformer.decrypt_for_read(doc, compiled)


async def test_reader_without_key_access_gets_no_plaintext(
    transformer, compiled, memory_vault
):
    encrypted = await transformer.encrypt_for_write(patient(), compiled)

    stranger = ClientEncryption({"local": {"key": secrets.token_bytes(96)}}, memory_vault)
    with pytest.raises(ProviderError):
        await stranger.transformer.decrypt_for_read(encrypted)


async def test_tampered_field_fails_whole_document(transformer, compiled):
    encrypted = await transformer.encrypt_for_write(patient(), compiled)
    tampered = bytearray(encrypted["bloodType"])
    tampered[-1] ^= 0x01
    encrypted["bloodType"] = EncryptedBinary(bytes(tampered))

    with pytest.raises(DecryptionError):
        await transformer.decrypt_for_read(encrypted)


async def test_transform_state_machine(key_manager, compiled):
    transform = DocumentTransform(FieldCipher(key_manager), compiled)
    assert transform.state is TransformState.START

    with pytest.raises(SchemaMismatchError):
        await transform.encrypt({"insurance": 5})
    assert transform.state is TransformState.FAILED


async def test_transform_reaches_done(client, compiled):
    transform = DocumentTransform(FieldCipher(client.key_manager), compiled)
    await transform.encrypt({"ssn": 1, "bloodType": "O-"})
    assert transform.state is TransformState.DONE
    assert transform.fields_transformed == 2


async def test_non_mapping_document(transformer, compiled):
    with pytest.raises(SchemaMismatchError):
        await transformer.encrypt_for_write(["ssn"], compiled)


async def test_unencodable_string_fails_whole_document(key_manager, compiled):
    transform = DocumentTransform(FieldCipher(key_manager), compiled)
    with pytest.raises(SerializationError):
        await transform.encrypt({"name": "Jon Doe", "bloodType": "A\ud800"})
    assert transform.state is TransformState.FAILED
