"""Tests for the run-scoped whiteboard."""

import threading

import pytest

from infraflow.resources import Network
from infraflow.whiteboard import Whiteboard


class TestValues:
    """Tests for the scalar namespace."""

    def test_set_get_delete(self) -> None:
        wb = Whiteboard()
        wb.set("resources_exist", "true")
        assert wb.get("resources_exist") == "true"

        wb.delete("resources_exist")
        assert wb.get("resources_exist") is None

    def test_missing_key_is_none(self) -> None:
        assert Whiteboard().get("nope") is None

    def test_value_replaces_object(self) -> None:
        wb = Whiteboard()
        wb.set_object("vpc", Network(name="vpc"))
        wb.set("vpc", "name")

        assert not wb.has_object("vpc")
        assert wb.get("vpc") == "name"


class TestObjects:
    """Tests for the object namespace."""

    def test_objects_are_copied_in_and_out(self) -> None:
        wb = Whiteboard()
        network = Network(name="vpc", description="before")
        wb.set_object("vpc", network)

        network.description = "changed after set"
        stored = wb.get_object_as("vpc", Network)
        assert stored is not None
        assert stored.description == "before"

        stored.description = "changed after get"
        assert wb.get_object_as("vpc", Network).description == "before"

    def test_typed_accessor_rejects_other_type(self) -> None:
        wb = Whiteboard()
        wb.set_object("vpc", ["not", "a", "network"])

        with pytest.raises(TypeError) as exc_info:
            wb.get_object_as("vpc", Network)

        assert "vpc" in str(exc_info.value)

    def test_set_none_deletes(self) -> None:
        wb = Whiteboard()
        wb.set_object("vpc", Network(name="vpc"))
        wb.set_object("vpc", None)

        assert wb.get_object("vpc") is None

    def test_objects_are_not_exported(self) -> None:
        wb = Whiteboard()
        wb.set_object("vpc", Network(name="vpc"))
        wb.set("resources_exist", "true")

        assert wb.export_flat() == {"resources_exist": "true"}


class TestChildren:
    """Tests for child scopes and the flat export."""

    def test_child_is_created_once(self) -> None:
        wb = Whiteboard()
        assert wb.get_child("ids") is wb.get_child("ids")
        assert wb.has_child("ids")

    @pytest.mark.parametrize("prefix", ["", "a/b"])
    def test_invalid_prefix(self, prefix: str) -> None:
        with pytest.raises(ValueError):
            Whiteboard().get_child(prefix)

    def test_export_import_round_trip(self) -> None:
        wb = Whiteboard()
        wb.set("resources_exist", "true")
        wb.get_child("ids").set("service-account-email", "sa@example.com")

        flat = wb.export_flat()
        assert flat == {
            "resources_exist": "true",
            "ids/service-account-email": "sa@example.com",
        }

        restored = Whiteboard()
        restored.import_flat(flat)
        assert restored.export_flat() == flat
        assert restored.get_child("ids").get("service-account-email") == "sa@example.com"

    def test_import_routes_on_first_separator(self) -> None:
        wb = Whiteboard()
        wb.import_flat({"a/b/c": "1"})

        assert wb.get_child("a").get_child("b").get("c") == "1"
        assert wb.export_flat() == {"a/b/c": "1"}

    def test_import_none_is_noop(self) -> None:
        wb = Whiteboard()
        wb.import_flat(None)
        assert wb.export_flat() == {}

    def test_children_share_root_lock(self) -> None:
        wb = Whiteboard()
        child = wb.get_child("ids")
        errors: list[BaseException] = []

        def writer(n: int) -> None:
            try:
                for i in range(200):
                    child.set(f"k{n}-{i}", str(i))
                    wb.export_flat()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(wb.export_flat()) == 800
