"""Tests for the annotation lookups."""

import aiosqlite
import pytest

from conftest import ALICE, BOB, CAROL
from tipheat.storage.annotations import AnnotationStore, InMemoryAnnotations


def test_in_memory_lookup_is_case_insensitive():
    annotations = InMemoryAnnotations(
        names={ALICE.upper().replace("0X", "0x"): "alice"},
        messages={(ALICE, "0xABC"): "hello"},
    )

    assert annotations.display_name(ALICE) == "alice"
    assert annotations.message(ALICE.upper().replace("0X", "0x"), "0xabc") == "hello"
    assert annotations.display_name(BOB) is None
    assert annotations.message(ALICE, "0xdef") is None


@pytest.mark.asyncio
async def test_store_loads_names_and_messages(tmp_path):
    db_path = str(tmp_path / "annotations.db")

    async with AnnotationStore(db_path):
        pass  # creates the schema

    async with aiosqlite.connect(db_path) as conn:
        await conn.executemany(
            "INSERT INTO profiles (address, display_name) VALUES (?, ?)",
            [(ALICE, "alice.eth"), (BOB, ""), (CAROL, "carol")],
        )
        await conn.executemany(
            "INSERT INTO tip_messages (address, tx_hash, message) VALUES (?, ?, ?)",
            [(ALICE, "0x01", "thanks!"), (BOB, "0x02", "gm"), (CAROL, "0x03", "hi")],
        )
        await conn.commit()

    async with AnnotationStore(db_path) as store:
        annotations = await store.load([ALICE, BOB.upper().replace("0X", "0x")])

    assert annotations.display_name(ALICE) == "alice.eth"
    assert annotations.display_name(BOB) is None
    assert annotations.display_name(CAROL) is None
    assert annotations.message(ALICE, "0x01") == "thanks!"
    assert annotations.message(BOB, "0x02") == "gm"
    assert annotations.message(CAROL, "0x03") is None


@pytest.mark.asyncio
async def test_store_requires_connection(tmp_path):
    store = AnnotationStore(str(tmp_path / "x.db"))
    with pytest.raises(RuntimeError):
        await store.load([ALICE])


@pytest.mark.asyncio
async def test_store_load_with_no_addresses(tmp_path):
    async with AnnotationStore(str(tmp_path / "x.db")) as store:
        annotations = await store.load([])
    assert annotations.display_name(ALICE) is None
