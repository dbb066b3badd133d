"""
Reunite — Item store tests
"""

import json
import logging

import pytest
from conftest import make_item

from reunite.store import InMemoryItemStore, ItemFilter, read_items_file


def _raw(item_id, **overrides):
    data = {
        "id": item_id,
        "title": "Umbrella",
        "date": "2024-02-01",
        "type": "found",
        "user_id": "u2",
    }
    data.update(overrides)
    return data


class TestLoad:
    def test_malformed_records_are_skipped(self, caplog):
        store = InMemoryItemStore()
        with caplog.at_level(logging.WARNING, logger="reunite.store"):
            added = store.load([_raw("ok"), _raw("bad", type="misplaced"), {"title": "no id"}])
        assert added == 1
        assert len(store) == 1
        assert "Rejected malformed item" in caplog.text

    def test_accepts_item_instances(self):
        store = InMemoryItemStore([make_item("a"), make_item("b")])
        assert len(store) == 2


class TestQuery:
    def _store(self):
        return InMemoryItemStore(
            [
                make_item("f1", type="found", user_id="u2"),
                make_item("f2", type="found", user_id="owner"),
                make_item("f3", type="found", user_id="u3", status="claimed"),
                make_item("l1", type="lost", user_id="u4"),
                make_item("f4", type="found", user_id="u5"),
            ]
        )

    def test_filters_polarity_status_and_owner(self):
        found = self._store().list_active_items(ItemFilter(type="found", exclude_user_id="owner"))
        assert [i.id for i in found] == ["f1", "f4"]

    def test_limit(self):
        found = self._store().list_active_items(ItemFilter(type="found", limit=1))
        assert [i.id for i in found] == ["f1"]

    def test_no_status_filter(self):
        found = self._store().list_active_items(ItemFilter(type="found", status=None))
        assert [i.id for i in found] == ["f1", "f2", "f3", "f4"]


class TestItemsFile:
    def test_list_or_object(self, tmp_path):
        as_list = tmp_path / "a.json"
        as_list.write_text(json.dumps([_raw("a")]))
        as_object = tmp_path / "b.json"
        as_object.write_text(json.dumps({"items": [_raw("b"), _raw("c")]}))
        assert [r["id"] for r in read_items_file(as_list)] == ["a"]
        assert len(InMemoryItemStore(read_items_file(as_object))) == 2

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"records": []}))
        with pytest.raises(ValueError):
            read_items_file(path)
