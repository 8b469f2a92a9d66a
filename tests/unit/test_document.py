"""
Unit tests for documents.

Tests cover:
- JSON mapping of persisted fields
- Identity members
- Tracking on load
- JsonDocument
"""

from dataclasses import dataclass

import pytest

from sdk.sofa_sdk.document import Document, JsonDocument
from sdk.sofa_sdk.errors import DocumentError
from sdk.sofa_sdk.reconcile import ReconcileStrategy
from sdk.sofa_sdk.schema import persisted, transient


@dataclass
class Car(Document):
    reconcile_by = ReconcileStrategy.AUTO_MERGE

    make: str = ""
    model: str = ""
    horse_powers: int = persisted(json_name="Hps", default=0)
    _mileage: int = 0
    scratch: str = transient(default="")


class TestDocument:
    """Tests for Document."""

    def test_new_document_has_no_identity(self):
        car = Car(make="Hoopty")

        assert car.id is None
        assert car.rev is None
        assert car.snapshot is None

    def test_to_json_omits_missing_identity(self):
        """_id and _rev are only written once known."""
        car = Car(make="Hoopty", model="Type R", horse_powers=5)

        assert car.to_json() == {
            "make": "Hoopty",
            "model": "Type R",
            "Hps": 5,
            "mileage": 0,
        }

    def test_to_json_includes_identity(self):
        car = Car(make="Hoopty")
        car.id = "car-1"
        car.rev = "1-abc"

        data = car.to_json()

        assert data["_id"] == "car-1"
        assert data["_rev"] == "1-abc"
        assert "scratch" not in data

    def test_read_json(self):
        """read_json fills identity and known members, ignoring the rest."""
        car = Car(scratch="keep")

        car.read_json({"_id": "car-1", "_rev": "2-x", "make": "Saab", "Hps": 7, "mileage": 3, "color": "red"})

        assert car.id == "car-1"
        assert car.rev == "2-x"
        assert car.make == "Saab"
        assert car.horse_powers == 7
        assert car._mileage == 3
        assert car.model == ""
        assert car.scratch == "keep"

    def test_from_json_starts_tracking(self):
        """Documents built from server JSON hold a baseline snapshot."""
        car = Car.from_json({"_id": "car-1", "_rev": "1-a", "make": "Saab"})

        assert isinstance(car, Car)
        assert car.snapshot is not None
        assert car.snapshot.rev == "1-a"
        assert car.snapshot.value_of("make") == "Saab"

    def test_identity_is_not_compared(self):
        """Dataclass equality only looks at persisted fields."""
        a = Car(make="Saab")
        b = Car(make="Saab")
        b.id = "car-2"

        assert a == b

    def test_merge_without_logic_raises(self):
        with pytest.raises(NotImplementedError):
            Car().merge(Car())

    @pytest.mark.asyncio
    async def test_database_copy_requires_id(self):
        """A document that was never created has no server copy."""
        with pytest.raises(DocumentError, match="without an id"):
            await Car().get_database_copy(None)

    def test_repr(self):
        doc = Document(id="x", rev="1-a")

        assert repr(doc) == "Document(id='x', rev='1-a')"


class TestJsonDocument:
    """Tests for JsonDocument."""

    def test_identity_lives_in_data(self):
        doc = JsonDocument({"name": "Hoopty"}, id="car-1", rev="1-a")

        assert doc.data == {"name": "Hoopty", "_id": "car-1", "_rev": "1-a"}
        assert doc.id == "car-1"
        assert doc.rev == "1-a"

    def test_parses_json_string(self):
        doc = JsonDocument('{"_id": "a", "n": 1}')

        assert doc.id == "a"
        assert doc["n"] == 1

    def test_clearing_identity(self):
        doc = JsonDocument({"_id": "a", "_rev": "1-a"})

        doc.rev = None

        assert "_rev" not in doc

    def test_write_json_excludes_identity(self):
        doc = JsonDocument({"_id": "a", "_rev": "1-a", "n": 1})

        assert doc.write_json() == {"n": 1}
        assert doc.to_json() == {"_id": "a", "_rev": "1-a", "n": 1}

    def test_item_access(self):
        doc = JsonDocument()
        doc["color"] = "red"

        assert doc["color"] == "red"
        assert doc.get("missing", 1) == 1

    def test_from_json_does_not_track(self):
        doc = JsonDocument.from_json({"_id": "a", "_rev": "1-a"})

        assert doc.snapshot is None

    def test_equality(self):
        assert JsonDocument({"a": 1}) == JsonDocument({"a": 1})
        assert JsonDocument({"a": 1}) != JsonDocument({"a": 2})
