from __future__ import annotations

import os
import re
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "EquipmentLending")

import pytest  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from lending import dal  # noqa: E402
from lending.config import ReservationRules  # noqa: E402
from lending.errors import DataAccessError  # noqa: E402
from lending.models import LendingSettings, Reservation, ReservationEvent  # noqa: E402
from lending.service import ReservationService  # noqa: E402

_FUNCTION = re.compile(r"^(attribute_exists|attribute_not_exists)\((.+)\)$")


def _holds(
    expression: str | None,
    item: dict[str, Any] | None,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
) -> bool:
    """Evaluate the small subset of DynamoDB condition syntax the DAL emits."""
    if not expression:
        return True
    names = names or {}
    values = values or {}

    def clause(text: str) -> bool:
        match = _FUNCTION.match(text)
        if match:
            present = item is not None and names.get(match.group(2), match.group(2)) in item
            return present if match.group(1) == "attribute_exists" else not present
        left, right = (part.strip() for part in text.split("="))
        return item is not None and item.get(names.get(left, left)) == values[right]

    return any(
        all(clause(c.strip()) for c in disjunct.split(" AND ")) for disjunct in expression.split(" OR ")
    )


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


class FakeTable:
    def __init__(self, name: str, key: str, sort_keys: dict[str, str] | None = None):
        self.name = name
        self.key = key
        self.sort_keys = sort_keys or {}
        self.items: dict[str, dict[str, Any]] = {}
        self.fail_with: ClientError | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def put_item(self, Item, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):  # noqa NOSONAR
        self._check()
        current = self.items.get(Item[self.key])
        if not _holds(ConditionExpression, current, ExpressionAttributeNames, ExpressionAttributeValues):
            raise _conditional_failure("PutItem")
        self.items[Item[self.key]] = dict(Item)

    def get_item(self, Key):  # noqa NOSONAR
        self._check()
        item = self.items.get(Key[self.key])
        return {"Item": dict(item)} if item else {}

    def update_item(self, **kwargs):
        self._check()
        key = kwargs["Key"][self.key]
        current = self.items.get(key)
        eav = kwargs.get("ExpressionAttributeValues") or {}
        ean = kwargs.get("ExpressionAttributeNames") or {}
        if not _holds(kwargs.get("ConditionExpression"), current, ean, eav):
            raise _conditional_failure("UpdateItem")
        attrs = dict(current or {self.key: key})
        set_part = kwargs.get("UpdateExpression", "").split("SET", 1)[1]
        for assign in [s.strip() for s in set_part.split(",") if s.strip()]:
            name, val = [s.strip() for s in assign.split("=")]
            attrs[ean.get(name, name)] = eav[val]
        self.items[key] = attrs
        return {"Attributes": dict(attrs)}

    def query(self, **kwargs):
        self._check()
        items = [
            dict(it)
            for it in self.items.values()
            if _holds(
                kwargs["KeyConditionExpression"],
                it,
                kwargs.get("ExpressionAttributeNames"),
                kwargs.get("ExpressionAttributeValues"),
            )
        ]
        sort_key = self.sort_keys.get(kwargs.get("IndexName", ""))
        if sort_key:
            items.sort(key=lambda it: it.get(sort_key, ""), reverse=not kwargs.get("ScanIndexForward", True))
        return {"Items": items}

    def scan(self, **kwargs):
        self._check()
        return {"Items": [dict(it) for it in self.items.values()]}


class FakeClient:
    """All-or-nothing TransactWriteItems over FakeTables."""

    def __init__(self, tables: list[FakeTable]):
        self.tables = {t.name: t for t in tables}
        self.before_transaction: Callable[[], None] | None = None

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        if self.before_transaction is not None:
            hook, self.before_transaction = self.before_transaction, None
            hook()
        for entry in TransactItems:
            (op, params), = entry.items()
            table = self.tables[params["TableName"]]
            key = params["Item"][table.key] if op == "Put" else params["Key"][table.key]
            if not _holds(
                params.get("ConditionExpression"),
                table.items.get(key),
                params.get("ExpressionAttributeNames"),
                params.get("ExpressionAttributeValues"),
            ):
                raise ClientError(
                    {
                        "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                        "CancellationReasons": [{"Code": "ConditionalCheckFailed"}],
                    },
                    "TransactWriteItems",
                )
        for entry in TransactItems:
            (op, params), = entry.items()
            table = self.tables[params["TableName"]]
            if op == "Put":
                table.items[params["Item"][table.key]] = dict(params["Item"])
            else:
                update = {k: v for k, v in params.items() if k not in ("TableName", "ConditionExpression")}
                table.update_item(**update)
        return {}


class FakeDynamo:
    def __init__(self) -> None:
        self.reservations = FakeTable(
            "reservations", "reservation_id", sort_keys={"status_end_time_index": "end_time"}
        )
        self.loans = FakeTable("loans", "loan_id")
        self.guards = FakeTable("reservation_guards", "guard_id")
        self.equipment = FakeTable("equipment", "equipment_id")
        self.notifications = FakeTable("notifications", "notification_id")
        self.settings = FakeTable("settings", "setting_id")
        self.client = FakeClient(
            [self.reservations, self.loans, self.guards, self.equipment, self.notifications, self.settings]
        )


@pytest.fixture()
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDynamo:
    db = FakeDynamo()
    monkeypatch.setattr(dal, "_table", db.reservations)
    monkeypatch.setattr(dal, "_loans", db.loans)
    monkeypatch.setattr(dal, "_guards", db.guards)
    monkeypatch.setattr(dal, "_equipment", db.equipment)
    monkeypatch.setattr(dal, "_notifications", db.notifications)
    monkeypatch.setattr(dal, "_settings", db.settings)
    monkeypatch.setattr(dal, "_client", db.client)
    return db


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: list[ReservationEvent] = []

    def dispatch(self, events) -> int:
        batch = list(events)
        self.events.extend(batch)
        return len(batch)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 5, 30, 8, 0, tzinfo=UTC))


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def settings() -> LendingSettings:
    return LendingSettings()


@pytest.fixture()
def service(fake_db: FakeDynamo, dispatcher: RecordingDispatcher, clock: FixedClock, settings: LendingSettings):
    counter = iter(range(1, 10_000))
    return ReservationService(
        store=dal,
        notifier=dispatcher,
        rules=ReservationRules(),
        clock=clock,
        settings_provider=lambda: settings,
        id_factory=lambda: f"id-{next(counter)}",
    )


def reservation_factory(**overrides: Any) -> Reservation:
    base: dict[str, Any] = dict(
        reservation_id="r-1",
        equipment_id="E1",
        user_id="u-1",
        reservation_date=date(2025, 6, 1),
        start_time=datetime(2025, 6, 1, 10, 0, tzinfo=UTC),
        end_time=datetime(2025, 6, 1, 11, 0, tzinfo=UTC),
        purpose="Lab session",
        status="approved",
    )
    base.update(overrides)
    return Reservation(**base)


def store_reservation(db: FakeDynamo, reservation: Reservation) -> Reservation:
    item = dal._to_item(reservation.model_dump())
    db.reservations.items[reservation.reservation_id] = item
    return reservation


class StaticStore:
    """Equipment-day lookup over a fixed list of reservations."""

    def __init__(self, reservations: list[Reservation] | None = None, fail: bool = False):
        self.reservations = reservations or []
        self.fail = fail
        self.calls = 0

    def list_reservations_for_equipment(self, equipment_id: str, day: date) -> list[Reservation]:
        self.calls += 1
        if self.fail:
            raise DataAccessError("Could not list equipment reservations")
        return [r for r in self.reservations if r.equipment_id == equipment_id and r.reservation_date == day]
