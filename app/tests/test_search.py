"""Tests for tiered species search."""

from __future__ import annotations

import pytest

from conftest import SPECIES_ROWS, FakePartitionSource, partitions_for
from fieldlog.core.search import SpeciesSearchIndex
from fieldlog.storage.reference_db import ReferenceDataStore


async def _index(tmp_path, rows=SPECIES_ROWS, **kwargs):
    reference = ReferenceDataStore(tmp_path / "species.sqlite3", FakePartitionSource(partitions_for(rows)))
    index = SpeciesSearchIndex(reference, **kwargs)
    await reference.check_and_sync()
    return reference, index


def _names(results):
    return [e.vernacular_name for e in results]


@pytest.mark.asyncio
async def test_exact_then_substring_then_fuzzy(tmp_path):
    _, index = await _index(tmp_path)

    results = index.search("bjørk")

    assert _names(results) == ["Bjørk", "Bjørkefink", "Bjørnebær"]
    assert "Gran" not in _names(results)


@pytest.mark.asyncio
async def test_matches_scientific_name(tmp_path):
    _, index = await _index(tmp_path)
    assert _names(index.search("Picea abies"))[0] == "Gran"
    assert "Bokfink" in _names(index.search("fringilla"))


@pytest.mark.asyncio
async def test_query_is_trimmed_and_case_insensitive(tmp_path):
    _, index = await _index(tmp_path)
    assert _names(index.search("  GRAN "))[0] == "Gran"


@pytest.mark.asyncio
async def test_empty_query_returns_nothing(tmp_path):
    _, index = await _index(tmp_path)
    assert index.search("") == []
    assert index.search("   ") == []


@pytest.mark.asyncio
async def test_results_capped_and_unique(tmp_path):
    rows = [
        {"Genus": "Salix", "Species": f"species{i:02d}", "VernacularNameBokmaal": f"Selje {i}"}
        for i in range(40)
    ]
    _, index = await _index(tmp_path, rows=rows)

    results = index.search("selje")

    assert len(results) == 20
    assert len({e.id for e in results}) == 20
    assert len(index.search("selje", limit=5)) == 5
    assert len(index.search("selje", limit=100)) == 20


@pytest.mark.asyncio
async def test_index_rebuilt_after_reload(tmp_path):
    reference = ReferenceDataStore(tmp_path / "species.sqlite3", FakePartitionSource())
    index = SpeciesSearchIndex(reference)
    assert index.search("gran") == []

    await reference.check_and_sync()

    assert _names(index.search("gran"))[0] == "Gran"
    index.search("bjørk")
    assert index.builds == 2


@pytest.mark.asyncio
async def test_short_name_inside_query_is_not_a_perfect_match(tmp_path):
    rows = SPECIES_ROWS + [{"Genus": "Zzyzx", "Species": "zzyzx", "VernacularNameBokmaal": "Ra"}]
    _, index = await _index(tmp_path, rows=rows)

    names = _names(index.search("gran"))

    assert names[0] == "Gran"
    assert "Ra" not in names
