"""
Integration tests for saving documents under concurrent modification.

Tests cover:
- Automatic field-by-field merge on conflict
- Delegated merge on conflict
- Conflicts surfaced to the caller (no strategy, no baseline)
- At most one reconcile-and-resubmit per save
- Snapshot refresh after saves
"""

import logging
from dataclasses import dataclass, field

import pytest

from sdk.sofa_sdk.document import Document, JsonDocument
from sdk.sofa_sdk.errors import ConflictError, NotFoundError, UnmergeableConflictError
from sdk.sofa_sdk.reconcile import ReconcileStrategy
from sdk.sofa_sdk.registry import register_document
from sdk.sofa_sdk.schema import persisted


@register_document
@dataclass
class Car(Document):
    reconcile_by = ReconcileStrategy.AUTO_MERGE

    make: str = ""
    model: str = ""
    horse_powers: int = persisted(json_name="Hps", default=0)
    owners: list = field(default_factory=list)


@register_document
@dataclass
class Bike(Document):
    make: str = ""
    gears: int = 1


@register_document
@dataclass
class Logbook(Document):
    """Merges entries from both sides."""

    reconcile_by = ReconcileStrategy.MANUAL_MERGE

    entries: list = field(default_factory=list)

    def merge(self, database_copy):
        merged = list(database_copy.entries)
        merged.extend(e for e in self.entries if e not in merged)
        self.entries = merged
        self.rev = database_copy.rev


@dataclass
class RacingCar(Car):
    """A Car whose server copy is changed again right after it is fetched."""

    couch = None

    async def get_database_copy(self, db):
        copy = await super().get_database_copy(db)
        if self.couch is not None:
            self.couch.put_raw(db.name, self.id, {"make": "Interloper", "model": "X", "Hps": 1})
            self.couch = None
        return copy


async def stored_car(db, **values):
    car = Car(**values)
    car.id = "car-1"
    await db.save_document(car)
    return car


class TestAutoMerge:
    """Conflicts on AUTO_MERGE documents."""

    @pytest.mark.asyncio
    async def test_disjoint_edits_both_survive(self, db, couch):
        """Edits to different fields by two writers are merged."""
        mine = await stored_car(db, make="Hoopty", model="Type R", horse_powers=5)
        theirs = await db.read_document_as(Car, "car-1")

        theirs.model = "Type S"
        await db.save_document(theirs)

        mine.horse_powers = 6
        await db.save_document(mine)

        stored = couch.get_raw("garage", "car-1")
        assert stored["model"] == "Type S"
        assert stored["Hps"] == 6
        assert stored["_rev"].startswith("3-")
        assert mine.rev == stored["_rev"]
        assert mine.model == "Type S"

    @pytest.mark.asyncio
    async def test_local_edit_wins_same_field(self, db, couch):
        mine = await stored_car(db, make="Hoopty")
        couch.put_raw("garage", "car-1", {"make": "Volvo", "model": "240"})

        mine.make = "Saab"
        await db.save_document(mine)

        stored = couch.get_raw("garage", "car-1")
        assert stored["make"] == "Saab"
        assert stored["model"] == "240"

    @pytest.mark.asyncio
    async def test_exactly_one_retry(self, db, couch):
        """A resolved conflict costs exactly one extra write."""
        mine = await stored_car(db, make="Hoopty")
        couch.put_raw("garage", "car-1", {"model": "Type S"})
        writes, conflicts = couch.write_count, couch.conflict_count

        mine.horse_powers = 9
        await db.save_document(mine)

        assert couch.write_count - writes == 2
        assert couch.conflict_count - conflicts == 1

    @pytest.mark.asyncio
    async def test_snapshot_refreshed_after_merge(self, db, couch):
        """The merged state becomes the baseline for the next save."""
        mine = await stored_car(db, make="Hoopty", owners=["ann"])
        couch.put_raw("garage", "car-1", {"make": "Hoopty", "owners": ["ann", "bob"]})

        mine.model = "Type R"
        await db.save_document(mine)

        assert mine.snapshot.rev == mine.rev
        assert mine.snapshot.value_of("owners") == ["ann", "bob"]
        assert mine.snapshot.value_of("model") == "Type R"

    @pytest.mark.asyncio
    async def test_logs_reconciliation(self, db, couch, caplog):
        mine = await stored_car(db, make="Hoopty")
        couch.put_raw("garage", "car-1", {"make": "Saab"})

        mine.model = "R"
        with caplog.at_level(logging.INFO):
            await db.save_document(mine)

        assert "reconciling by auto_merge" in caplog.text


class TestManualMerge:
    """Conflicts on MANUAL_MERGE documents."""

    @pytest.mark.asyncio
    async def test_merge_combines_entries(self, db):
        book = Logbook(entries=["oil change"])
        book.id = "log-1"
        await db.save_document(book)

        other = await db.read_document_as(Logbook, "log-1")
        other.entries.append("new tyres")
        await db.save_document(other)

        book.entries.append("car wash")
        await db.save_document(book)

        stored = await db.read_document_as(Logbook, "log-1")
        assert stored.entries == ["oil change", "new tyres", "car wash"]
        assert book.rev == stored.rev

    @pytest.mark.asyncio
    async def test_merger_callable(self, db, couch):
        """A per-instance merger replaces merge()."""

        @dataclass
        class Note(Document):
            text: str = ""

        note = Note(text="a")
        note.id = "note-1"
        note.reconcile_by = ReconcileStrategy.MANUAL_MERGE

        def keep_longest(mine, theirs):
            if len(theirs.text) > len(mine.text):
                mine.text = theirs.text
            mine.rev = theirs.rev

        note.merger = keep_longest
        await db.save_document(note)
        couch.put_raw("garage", "note-1", {"text": "much longer"})

        note.text = "b"
        await db.save_document(note)

        assert couch.get_raw("garage", "note-1")["text"] == "much longer"


class TestConflictsSurfaced:
    """Conflicts that reach the caller."""

    @pytest.mark.asyncio
    async def test_no_strategy_raises(self, db, couch):
        """Documents without a strategy get the conflict."""
        bike = Bike(make="Brompton")
        bike.id = "bike-1"
        await db.save_document(bike)
        couch.put_raw("garage", "bike-1", {"make": "Moulton"})

        bike.gears = 3
        with pytest.raises(ConflictError) as exc_info:
            await db.save_document(bike)

        assert not isinstance(exc_info.value, UnmergeableConflictError)
        assert couch.get_raw("garage", "bike-1")["make"] == "Moulton"

    @pytest.mark.asyncio
    async def test_json_document_raises(self, db, couch):
        doc = JsonDocument({"make": "Hoopty"}, id="doc-1")
        doc.reconcile_by = ReconcileStrategy.AUTO_MERGE
        await db.save_document(doc)
        couch.put_raw("garage", "doc-1", {"make": "Saab"})

        doc["make"] = "Fiat"
        with pytest.raises(ConflictError):
            await db.save_document(doc)

    @pytest.mark.asyncio
    async def test_new_document_without_baseline(self, db, couch):
        """A never-synchronized document colliding with a stored one cannot be merged."""
        await stored_car(db, make="Hoopty")
        writes = couch.write_count

        fresh = Car(make="Saab")
        fresh.id = "car-1"
        with pytest.raises(UnmergeableConflictError) as exc_info:
            await db.save_document(fresh)

        assert isinstance(exc_info.value, ConflictError)
        assert isinstance(exc_info.value.__cause__, ConflictError)
        assert couch.write_count - writes == 1
        assert fresh.rev is None

    @pytest.mark.asyncio
    async def test_strategy_switched_after_load(self, db, couch):
        """Switching to AUTO_MERGE after load leaves no field baseline."""
        bike = Bike(make="Brompton")
        bike.id = "bike-1"
        await db.save_document(bike)
        couch.put_raw("garage", "bike-1", {"make": "Moulton"})

        bike.reconcile_by = ReconcileStrategy.AUTO_MERGE
        bike.gears = 3
        with pytest.raises(UnmergeableConflictError):
            await db.save_document(bike)

    @pytest.mark.asyncio
    async def test_second_conflict_propagates(self, db, couch):
        """A resubmit that conflicts again is not retried."""
        car = RacingCar(make="Hoopty")
        car.id = "car-1"
        car.couch = couch
        await db.save_document(car)
        couch.put_raw("garage", "car-1", {"make": "Saab"})
        writes, conflicts = couch.write_count, couch.conflict_count

        car.model = "Type R"
        with pytest.raises(ConflictError) as exc_info:
            await db.save_document(car)

        assert not isinstance(exc_info.value, UnmergeableConflictError)
        assert couch.write_count - writes == 2
        assert couch.conflict_count - conflicts == 2
        assert couch.get_raw("garage", "car-1")["make"] == "Interloper"

    @pytest.mark.asyncio
    async def test_retry_after_second_conflict(self, db, couch):
        """The failed merge is undone, so a retry keeps the newest server values."""
        car = RacingCar(make="Hoopty")
        car.id = "car-1"
        await db.save_document(car)
        first_rev = car.rev
        car.couch = couch
        couch.put_raw("garage", "car-1", {"make": "Saab"})

        car.model = "Type R"
        with pytest.raises(ConflictError):
            await db.save_document(car)

        assert (car.make, car.model, car.horse_powers) == ("Hoopty", "Type R", 0)
        assert car.rev == first_rev

        await db.save_document(car)

        stored = couch.get_raw("garage", "car-1")
        assert stored["make"] == "Interloper"
        assert stored["model"] == "Type R"
        assert stored["Hps"] == 1
        assert car.rev == stored["_rev"]

    @pytest.mark.asyncio
    async def test_deleted_while_reconciling(self, db):
        """A document deleted by another writer cannot be reconciled."""
        mine = await stored_car(db, make="Hoopty")
        theirs = await db.read_document_as(Car, "car-1")
        await db.delete_document(theirs)

        mine.model = "Type R"
        with pytest.raises(NotFoundError):
            await db.save_document(mine)


class TestSnapshots:
    """Snapshot bookkeeping around saves."""

    @pytest.mark.asyncio
    async def test_unchanged_resave_advances_rev(self, db, couch):
        """Saving an unchanged document again is not a conflict."""
        car = await stored_car(db, make="Hoopty")
        conflicts = couch.conflict_count

        await db.save_document(car)

        assert car.rev.startswith("2-")
        assert couch.conflict_count == conflicts
        assert car.snapshot.rev == car.rev

    @pytest.mark.asyncio
    async def test_created_document_is_tracked(self, db):
        car = Car(make="Hoopty")

        await db.save_document(car)

        assert car.id is not None
        assert car.rev.startswith("1-")
        assert car.snapshot.rev == car.rev
        assert car.snapshot.value_of("make") == "Hoopty"

    @pytest.mark.asyncio
    async def test_failed_save_keeps_old_snapshot(self, db, couch):
        bike = Bike(make="Brompton")
        bike.id = "bike-1"
        bike.reconcile_by = ReconcileStrategy.MANUAL_MERGE
        await db.save_document(bike)
        snapshot = bike.snapshot
        couch.put_raw("garage", "bike-1", {"make": "Moulton"})

        with pytest.raises(NotImplementedError):
            await db.save_document(bike)

        assert bike.snapshot is snapshot

    @pytest.mark.asyncio
    async def test_loaded_documents_are_tracked(self, db):
        await stored_car(db, make="Hoopty", owners=["ann"])

        loaded = await db.read_document_as(Car, "car-1")
        loaded.owners.append("bob")

        assert loaded.snapshot.value_of("owners") == ["ann"]
