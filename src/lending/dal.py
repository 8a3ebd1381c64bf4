from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .errors import ConcurrentUpdateError, DataAccessError
from .models import Equipment, LendingSettings, Loan, Notification, Reservation, ReservationStatus
from .timeutils import to_iso

logger = Logger()

_TABLE_NAME = os.environ.get("TABLE_NAME", "reservations")
_LOANS_TABLE_NAME = os.environ.get("LOANS_TABLE_NAME", "loans")
_GUARDS_TABLE_NAME = os.environ.get("GUARDS_TABLE_NAME", "reservation_guards")
_EQUIPMENT_TABLE_NAME = os.environ.get("EQUIPMENT_TABLE_NAME", "equipment")
_NOTIFICATIONS_TABLE_NAME = os.environ.get("NOTIFICATIONS_TABLE_NAME", "notifications")
_SETTINGS_TABLE_NAME = os.environ.get("SETTINGS_TABLE_NAME", "settings")

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
_table: DynamoDBTable = _dynamodb.Table(_TABLE_NAME)
_loans: DynamoDBTable = _dynamodb.Table(_LOANS_TABLE_NAME)
_guards: DynamoDBTable = _dynamodb.Table(_GUARDS_TABLE_NAME)
_equipment: DynamoDBTable = _dynamodb.Table(_EQUIPMENT_TABLE_NAME)
_notifications: DynamoDBTable = _dynamodb.Table(_NOTIFICATIONS_TABLE_NAME)
_settings: DynamoDBTable = _dynamodb.Table(_SETTINGS_TABLE_NAME)
# the resource's client accepts plain Python values, like the tables do
_client: DynamoDBClient = _dynamodb.meta.client

RESERVATION_NOT_FOUND = "Reservation not found"
LOAN_NOT_FOUND = "Loan not found"
SETTINGS_KEY = "general"

_CONFLICT_CODES = frozenset({"ConditionalCheckFailedException", "TransactionCanceledException"})


def _now() -> datetime:
    return datetime.now(UTC)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


def _to_item(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _serialize(v) for k, v in values.items() if v is not None}


def _guard_key(equipment_id: str, day: date) -> str:
    return f"{equipment_id}#{day.isoformat()}"


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _CONFLICT_CODES:
            logger.info("Conditional write rejected", extra={"action": action, "code": code})
            raise ConcurrentUpdateError(f"Could not {action}: the record changed concurrently") from exc
        logger.exception("DynamoDB request failed", extra={"action": action, "code": code})
        raise DataAccessError(f"Could not {action}") from exc


def _update_expression(
    changes: Mapping[str, Any],
) -> tuple[str, dict[str, str], dict[str, Any]]:
    set_parts: list[str] = []
    names: dict[str, str] = {}
    values: dict[str, Any] = {}

    def set_attr(name: str, value: Any) -> None:
        names[f"#_{name}"] = name
        values[f":{name}"] = _serialize(value)
        set_parts.append(f"#_{name} = :{name}")

    for name, value in changes.items():
        set_attr(name, value)
    set_attr("updated_at", _now())
    return "SET " + ", ".join(set_parts), names, values


def _query_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], table.query(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _scan_all(table: DynamoDBTable) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {}
    while True:
        resp = cast(dict[str, Any], table.scan(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


# Reservations


def read_guard_version(equipment_id: str, day: date) -> int:
    """Current write version of one equipment's day; 0 before the first booking."""
    with _translate_errors("read reservation guard"):
        resp = cast(dict[str, Any], _guards.get_item(Key={"guard_id": _guard_key(equipment_id, day)}))
    item = resp.get("Item") or {}
    return int(item.get("version", 0))


def _guard_bump(equipment_id: str, day: date, expected_version: int) -> dict[str, Any]:
    return {
        "Update": {
            "TableName": _guards.name,
            "Key": {"guard_id": _guard_key(equipment_id, day)},
            "UpdateExpression": "SET #_version = :next_version, #_updated_at = :updated_at",
            "ConditionExpression": "attribute_not_exists(guard_id) OR #_version = :expected_version",
            "ExpressionAttributeNames": {"#_version": "version", "#_updated_at": "updated_at"},
            "ExpressionAttributeValues": {
                ":next_version": expected_version + 1,
                ":expected_version": expected_version,
                ":updated_at": to_iso(_now()),
            },
        }
    }


def create_reservation(reservation: Reservation, *, guard_version: int) -> Reservation:
    """Store a new reservation, provided nobody booked the same day since ``guard_version`` was read."""
    now = _now()
    item = _to_item(reservation.model_dump()) | {"created_at": to_iso(now), "updated_at": to_iso(now)}
    logger.info(
        "Creating reservation",
        extra={"reservation_id": reservation.reservation_id, "guard_version": guard_version},
    )
    with _translate_errors("create reservation"):
        _client.transact_write_items(
            TransactItems=[
                _guard_bump(reservation.equipment_id, reservation.reservation_date, guard_version),
                {
                    "Put": {
                        "TableName": _table.name,
                        "Item": item,
                        "ConditionExpression": "attribute_not_exists(reservation_id)",
                    }
                },
            ]
        )
    return _to_model(item)


def get_reservation(reservation_id: str) -> Reservation:
    with _translate_errors("read reservation"):
        resp = cast(dict[str, Any], _table.get_item(Key={"reservation_id": reservation_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(RESERVATION_NOT_FOUND)
    return _to_model(item)


def list_reservations_for_equipment(equipment_id: str, day: date) -> list[Reservation]:
    with _translate_errors("list equipment reservations"):
        items = _query_all(
            _table,
            IndexName="equipment_date_index",
            KeyConditionExpression="#_equipment_id = :equipment_id AND #_reservation_date = :reservation_date",
            ExpressionAttributeNames={"#_equipment_id": "equipment_id", "#_reservation_date": "reservation_date"},
            ExpressionAttributeValues={":equipment_id": equipment_id, ":reservation_date": day.isoformat()},
        )
    return [_to_model(it) for it in items]


def list_reservations_by_status(status: ReservationStatus) -> list[Reservation]:
    """Reservations in ``status``, earliest end time first."""
    with _translate_errors(f"list {status} reservations"):
        items = _query_all(
            _table,
            IndexName="status_end_time_index",
            KeyConditionExpression="#_status = :status",
            ExpressionAttributeNames={"#_status": "status"},
            ExpressionAttributeValues={":status": status},
            ScanIndexForward=True,
        )
    return [_to_model(it) for it in items]


def list_reservations_for_user(user_id: str) -> list[Reservation]:
    with _translate_errors("list user reservations"):
        items = _query_all(
            _table,
            IndexName="user_id_index",
            KeyConditionExpression="#_user_id = :user_id",
            ExpressionAttributeNames={"#_user_id": "user_id"},
            ExpressionAttributeValues={":user_id": user_id},
        )
    return [_to_model(it) for it in items]


def list_reservations(
    *,
    status: ReservationStatus | None = None,
    user_id: str | None = None,
    equipment_id: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = 100,
) -> list[Reservation]:
    """Filtered listing, newest first. Uses the most selective index, then filters in memory."""
    if user_id is not None:
        reservations = list_reservations_for_user(user_id)
    elif status is not None:
        reservations = list_reservations_by_status(status)
    else:
        with _translate_errors("scan reservations"):
            reservations = [_to_model(it) for it in _scan_all(_table)]

    def keep(r: Reservation) -> bool:
        return (
            (status is None or r.status == status)
            and (equipment_id is None or r.equipment_id == equipment_id)
            and (start_date is None or r.reservation_date >= start_date)
            and (end_date is None or r.reservation_date <= end_date)
        )

    oldest = datetime.min.replace(tzinfo=UTC)
    matching = sorted(filter(keep, reservations), key=lambda r: r.created_at or oldest, reverse=True)
    return matching[:limit]


def update_reservation_fields(
    reservation_id: str,
    changes: Mapping[str, Any],
    *,
    expected_status: ReservationStatus,
    require: Mapping[str, Any] | None = None,
) -> Reservation:
    """Apply ``changes`` only while the reservation is still in ``expected_status``.

    ``require`` adds equality conditions on other attributes.
    """
    update_expr, names, values = _update_expression(changes)
    names["#_expected"] = "status"
    values[":expected_status"] = expected_status
    condition = "#_expected = :expected_status"
    for name, value in (require or {}).items():
        names[f"#_require_{name}"] = name
        values[f":require_{name}"] = _serialize(value)
        condition += f" AND #_require_{name} = :require_{name}"
    logger.info(
        "Updating reservation",
        extra={"reservation_id": reservation_id, "expected_status": expected_status, "fields": sorted(changes)},
    )
    with _translate_errors("update reservation"):
        resp = cast(
            dict[str, Any],
            _table.update_item(
                Key={"reservation_id": reservation_id},
                UpdateExpression=update_expr,
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            ),
        )
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _to_model(attrs)


def reschedule_reservation(
    reservation: Reservation, changes: Mapping[str, Any], *, guard_version: int
) -> Reservation:
    """Move a reservation in time, guarded on its (possibly new) day like a creation."""
    day = changes.get("reservation_date", reservation.reservation_date)
    update_expr, names, values = _update_expression(changes)
    names["#_expected"] = "status"
    values[":expected_status"] = reservation.status
    with _translate_errors("reschedule reservation"):
        _client.transact_write_items(
            TransactItems=[
                _guard_bump(reservation.equipment_id, day, guard_version),
                {
                    "Update": {
                        "TableName": _table.name,
                        "Key": {"reservation_id": reservation.reservation_id},
                        "UpdateExpression": update_expr,
                        "ConditionExpression": "#_expected = :expected_status",
                        "ExpressionAttributeNames": names,
                        "ExpressionAttributeValues": values,
                    }
                },
            ]
        )
    return get_reservation(reservation.reservation_id)


def convert_reservation(
    reservation_id: str, changes: Mapping[str, Any], loan: Loan, *, expected_status: ReservationStatus
) -> Reservation:
    """Create ``loan`` and mark the reservation converted in a single transaction."""
    update_expr, names, values = _update_expression(changes)
    names["#_expected"] = "status"
    values[":expected_status"] = expected_status
    loan_item = _to_item(loan.model_dump())
    logger.info("Converting reservation to loan", extra={"reservation_id": reservation_id, "loan_id": loan.loan_id})
    with _translate_errors("convert reservation"):
        _client.transact_write_items(
            TransactItems=[
                {
                    "Put": {
                        "TableName": _loans.name,
                        "Item": loan_item,
                        "ConditionExpression": "attribute_not_exists(loan_id)",
                    }
                },
                {
                    "Update": {
                        "TableName": _table.name,
                        "Key": {"reservation_id": reservation_id},
                        "UpdateExpression": update_expr,
                        "ConditionExpression": (
                            "#_expected = :expected_status AND attribute_not_exists(converted_to_loan_id)"
                        ),
                        "ExpressionAttributeNames": names,
                        "ExpressionAttributeValues": values,
                    }
                },
            ]
        )
    return get_reservation(reservation_id)


# Loans, equipment, notifications, settings


def get_loan(loan_id: str) -> Loan:
    with _translate_errors("read loan"):
        resp = cast(dict[str, Any], _loans.get_item(Key={"loan_id": loan_id}))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(LOAN_NOT_FOUND)
    return Loan.model_validate(item)


def list_loans_for_user(user_id: str) -> list[Loan]:
    with _translate_errors("list user loans"):
        items = _query_all(
            _loans,
            IndexName="user_id_index",
            KeyConditionExpression="#_user_id = :user_id",
            ExpressionAttributeNames={"#_user_id": "user_id"},
            ExpressionAttributeValues={":user_id": user_id},
        )
    return [Loan.model_validate(it) for it in items]


def get_equipment(equipment_id: str) -> Equipment | None:
    with _translate_errors("read equipment"):
        resp = cast(dict[str, Any], _equipment.get_item(Key={"equipment_id": equipment_id}))
    item = resp.get("Item")
    return Equipment.model_validate(item) if isinstance(item, dict) else None


def save_notification(notification: Notification) -> None:
    item = _to_item(notification.model_dump())
    item.setdefault("created_at", to_iso(_now()))
    with _translate_errors("save notification"):
        _notifications.put_item(Item=item)  # type: ignore


def get_settings() -> LendingSettings:
    with _translate_errors("read settings"):
        resp = cast(dict[str, Any], _settings.get_item(Key={"setting_id": SETTINGS_KEY}))
    item = resp.get("Item")
    return LendingSettings.model_validate(item) if isinstance(item, dict) else LendingSettings()


def _to_model(item: Mapping[str, Any]) -> Reservation:
    return Reservation.model_validate(dict(item))
