"""Relational backend: run records, idempotent fact upserts and named procedures."""

import hashlib
import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence
from sqlalchemy.orm import Session
import structlog

from marketsync.database import SessionLocal, session_scope
from marketsync.models import FactRow, ReportRun, RunStatus, SyncState

logger = structlog.get_logger(__name__)

UPSERT_CHUNK_SIZE = 500


class Backend(Protocol):
    """Persistence capabilities the orchestrators depend on."""

    def create_run(self, **fields: Any) -> str: ...

    def update_run(self, run_id: str, **fields: Any) -> None: ...

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]: ...

    def upsert_facts(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_keys: Sequence[str],
        run_id: Optional[str] = None,
        group_key: Optional[str] = None,
    ) -> int: ...

    def call_procedure(self, name: str, args: Mapping[str, Any]) -> Any: ...

    def get_sync_state(self, company_id: str, source_key: str, marketplace_id: str) -> Optional[Dict[str, Any]]: ...

    def save_sync_state(
        self,
        company_id: str,
        source_key: str,
        marketplace_id: str,
        watermark: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None: ...


def to_jsonable(value: Any) -> Any:
    """Make Decimal, datetime and enum values JSON-safe, recursively."""
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def natural_key_digest(key_values: Sequence[Any]) -> str:
    """Stable digest of a row's conflict columns."""
    encoded = json.dumps(to_jsonable(list(key_values)), separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _chunks(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


RUN_FIELDS = {
    "company_id", "channel", "marketplace_id", "report_type", "status", "report_id",
    "report_document_id", "remote_status", "data_start_time", "data_end_time", "row_count",
    "facts_upserted", "skipped_rows", "started_at", "completed_at", "report_request",
    "report_response", "error_message",
}


class SQLBackend:
    """Backend on a SQLAlchemy session factory."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self.procedures: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "erp_amazon_orders_upsert": self._orders_upsert,
            "erp_amazon_order_items_replace": self._order_items_replace,
            "erp_inventory_external_rows_upsert": self._inventory_rows_upsert,
            "erp_marketplace_settlement_batch_upsert": self._settlement_batch_upsert,
        }

    # Run records

    def create_run(self, **fields: Any) -> str:
        """
        Insert a run record.

        Returns:
            Run ID
        """
        unknown = set(fields) - RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown run fields: {', '.join(sorted(unknown))}")

        run_id = str(uuid.uuid4())
        with session_scope(self.session_factory) as db:
            db.add(ReportRun(id=run_id, **_run_values(fields)))
        logger.info("run_created", run_id=run_id, report_type=fields.get("report_type"))
        return run_id

    def update_run(self, run_id: str, **fields: Any) -> None:
        unknown = set(fields) - RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown run fields: {', '.join(sorted(unknown))}")

        with session_scope(self.session_factory) as db:
            run = db.get(ReportRun, run_id)
            if run is None:
                raise KeyError(f"Run {run_id} not found")
            for key, value in _run_values(fields).items():
                setattr(run, key, value)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            run = db.get(ReportRun, run_id)
            if run is None:
                return None
            return {
                "id": run.id,
                "company_id": run.company_id,
                "channel": run.channel,
                "marketplace_id": run.marketplace_id,
                "report_type": run.report_type,
                "status": run.status.value if run.status else None,
                "report_id": run.report_id,
                "report_document_id": run.report_document_id,
                "remote_status": run.remote_status,
                "row_count": run.row_count or 0,
                "facts_upserted": run.facts_upserted or 0,
                "skipped_rows": run.skipped_rows or 0,
                "requested_at": run.requested_at,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
                "error_message": run.error_message,
            }

    # Facts

    def upsert_facts(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_keys: Sequence[str],
        run_id: Optional[str] = None,
        group_key: Optional[str] = None,
    ) -> int:
        """
        Insert or update rows in a fact table, keyed on conflict columns.

        Re-running with the same rows leaves the table unchanged. Rows are
        written in chunks of 500.

        Args:
            table: Fact table name
            rows: Row mappings; each must hold every conflict column
            conflict_keys: Columns forming the natural key
            run_id: Run that produced the rows
            group_key: Optional parent entity for grouped replacement

        Returns:
            Number of distinct rows written
        """
        if not conflict_keys:
            raise ValueError("conflict_keys must not be empty")

        written = 0
        for chunk in _chunks(list(rows), UPSERT_CHUNK_SIZE):
            with session_scope(self.session_factory) as db:
                written += self._upsert_chunk(db, table, chunk, conflict_keys, run_id, group_key)

        logger.info("facts_upserted", table=table, rows=written)
        return written

    def _upsert_chunk(
        self,
        db: Session,
        table: str,
        chunk: Sequence[Mapping[str, Any]],
        conflict_keys: Sequence[str],
        run_id: Optional[str],
        group_key: Optional[str],
    ) -> int:
        # Later duplicates within a chunk win
        by_key: Dict[str, Mapping[str, Any]] = {}
        key_values: Dict[str, List[Any]] = {}
        for row in chunk:
            missing = [k for k in conflict_keys if k not in row]
            if missing:
                raise ValueError(f"Row for {table} is missing conflict columns: {', '.join(missing)}")
            values = [row[k] for k in conflict_keys]
            digest = natural_key_digest(values)
            by_key[digest] = row
            key_values[digest] = values

        existing = {
            fact.natural_key: fact
            for fact in db.query(FactRow).filter(
                FactRow.table_name == table,
                FactRow.natural_key.in_(list(by_key)),
            )
        }

        for digest, row in by_key.items():
            payload = to_jsonable(row)
            fact = existing.get(digest)
            if fact is None:
                db.add(FactRow(
                    table_name=table,
                    natural_key=digest,
                    company_id=row.get("company_id"),
                    group_key=group_key,
                    key_values=to_jsonable(dict(zip(conflict_keys, key_values[digest]))),
                    payload=payload,
                    run_id=run_id,
                ))
            else:
                fact.payload = payload
                fact.run_id = run_id or fact.run_id
                if group_key is not None:
                    fact.group_key = group_key

        return len(by_key)

    def list_facts(self, table: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Payloads of a fact table, oldest first."""
        with session_scope(self.session_factory) as db:
            query = db.query(FactRow).filter(FactRow.table_name == table)
            if company_id is not None:
                query = query.filter(FactRow.company_id == company_id)
            return [dict(fact.payload) for fact in query.order_by(FactRow.id)]

    # Procedures

    def call_procedure(self, name: str, args: Mapping[str, Any]) -> Any:
        """
        Run a named procedure.

        Raises:
            KeyError: If no procedure is registered under name
        """
        procedure = self.procedures.get(name)
        if procedure is None:
            raise KeyError(f"Unknown procedure: {name}")
        logger.debug("procedure_called", procedure=name)
        return procedure(args)

    def _orders_upsert(self, args: Mapping[str, Any]) -> str:
        order = dict(args["p_order"])
        row = {
            "company_id": args.get("p_company_id"),
            "marketplace_id": args["p_marketplace_id"],
            "amazon_order_id": order.get("AmazonOrderId"),
            "order": order,
        }
        if not row["amazon_order_id"]:
            raise ValueError("Order payload is missing AmazonOrderId")
        self.upsert_facts("amazon_orders", [row], ["company_id", "marketplace_id", "amazon_order_id"])
        return row["amazon_order_id"]

    def _order_items_replace(self, args: Mapping[str, Any]) -> int:
        company_id = args.get("p_company_id")
        order_id = args["p_amazon_order_id"]
        group = f"{company_id}:{order_id}"
        rows = [
            {
                "company_id": company_id,
                "marketplace_id": args.get("p_marketplace_id"),
                "amazon_order_id": order_id,
                "order_item_id": item.get("OrderItemId") or f"{order_id}:{index}",
                "item": dict(item),
            }
            for index, item in enumerate(args.get("p_items") or [])
        ]

        # Delete and insert share one transaction; a failed insert keeps the old items
        written = 0
        with session_scope(self.session_factory) as db:
            db.query(FactRow).filter(
                FactRow.table_name == "amazon_order_items",
                FactRow.group_key == group,
            ).delete(synchronize_session=False)

            for chunk in _chunks(rows, UPSERT_CHUNK_SIZE):
                written += self._upsert_chunk(
                    db,
                    "amazon_order_items",
                    chunk,
                    ["company_id", "amazon_order_id", "order_item_id"],
                    None,
                    group,
                )

        logger.info("order_items_replaced", amazon_order_id=order_id, rows=written)
        return written

    def _inventory_rows_upsert(self, args: Mapping[str, Any]) -> int:
        return self.upsert_facts(
            "inventory_external_rows",
            list(args.get("p_rows") or []),
            ["company_id", "marketplace_id", "sku", "location"],
            run_id=args.get("p_run_id"),
        )

    def _settlement_batch_upsert(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        company_id = args.get("p_company_id")
        report_id = args["p_report_id"]
        summary = dict(args.get("p_summary") or {})
        lines = list(args.get("p_rows") or [])
        batch_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"amazon-settlement:{company_id}:{report_id}"))

        self.upsert_facts(
            "settlement_batches",
            [{"company_id": company_id, "report_id": report_id, "batch_id": batch_id, **summary}],
            ["company_id", "report_id"],
        )

        rows = [
            {"company_id": company_id, "batch_id": batch_id, "line_no": index, **line}
            for index, line in enumerate(lines)
        ]
        with session_scope(self.session_factory) as db:
            before = db.query(FactRow).filter(
                FactRow.table_name == "settlement_lines",
                FactRow.group_key == batch_id,
            ).count()

        if rows:
            self.upsert_facts("settlement_lines", rows, ["company_id", "batch_id", "line_no"], group_key=batch_id)

        with session_scope(self.session_factory) as db:
            after = db.query(FactRow).filter(
                FactRow.table_name == "settlement_lines",
                FactRow.group_key == batch_id,
            ).count()

        return {"batch_id": batch_id, "attempted_rows": len(rows), "inserted_rows": after - before}

    # Sync state

    def get_sync_state(self, company_id: str, source_key: str, marketplace_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            state = self._find_state(db, company_id, source_key, marketplace_id)
            if state is None:
                return None
            return {
                "watermark": _as_utc(state.watermark),
                "last_success_at": _as_utc(state.last_success_at),
                "last_error_at": _as_utc(state.last_error_at),
                "last_error": state.last_error,
            }

    def save_sync_state(
        self,
        company_id: str,
        source_key: str,
        marketplace_id: str,
        watermark: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a successful sync (with its new watermark) or an error."""
        now = datetime.now(timezone.utc)
        with session_scope(self.session_factory) as db:
            state = self._find_state(db, company_id, source_key, marketplace_id)
            if state is None:
                state = SyncState(company_id=company_id, source_key=source_key, marketplace_id=marketplace_id)
                db.add(state)

            if error is not None:
                state.last_error = error
                state.last_error_at = now
            else:
                state.watermark = watermark or state.watermark
                state.last_success_at = now
                state.last_error = None

    @staticmethod
    def _find_state(db: Session, company_id: str, source_key: str, marketplace_id: str) -> Optional[SyncState]:
        return db.query(SyncState).filter(
            SyncState.company_id == company_id,
            SyncState.source_key == source_key,
            SyncState.marketplace_id == marketplace_id,
        ).first()


def _run_values(fields: Mapping[str, Any]) -> Dict[str, Any]:
    values = dict(fields)
    if "status" in values and not isinstance(values["status"], RunStatus):
        values["status"] = RunStatus(values["status"])
    for key in ("report_request", "report_response"):
        if values.get(key) is not None:
            values[key] = to_jsonable(values[key])
    return values


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_backend() -> SQLBackend:
    """Backend bound to the process database (for dependency injection in FastAPI)."""
    return SQLBackend(SessionLocal)
