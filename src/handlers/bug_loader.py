"""Reconciles Jira tickets from the analytics warehouse into the local store.

Three independently sourced mappings are fetched:

1. tickets mentioning a known test name (summary, description or comments),
2. tickets mentioning a known job name,
3. tickets referenced by an existing triage record.

They are merged into one authoritative ticket set which fully replaces the
``tickets`` table: rows are upserted by Jira ID, their test/job associations
are replaced, tickets no longer reported are deleted, and triage records whose
ticket link went stale are relinked by URL.

Per-record problems are collected in ``errors`` and never abort the run. A
failing warehouse query does.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlsplit

from pydantic import ValidationError
from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.clients.warehouse import Warehouse
from src.config import settings
from src.models.ci_test import Test
from src.models.job import Job
from src.models.ticket import Ticket, ticket_jobs, ticket_sync_ids, ticket_tests
from src.models.triage import Triage
from src.schemas.tickets import WarehouseTicketRow

logger = logging.getLogger(__name__)


def ticket_url(key: str) -> str:
    return f"{settings.jira_browse_url.rstrip('/')}/{key}"


def parse_ticket_key_from_url(jira_url: str) -> str:
    """Return ``OCPBUGS-123`` from ``https://issues.redhat.com/browse/OCPBUGS-123``."""
    segments = urlsplit(jira_url).path.split("/")
    if len(segments) < 3 or segments[-2] != "browse" or not segments[-1]:
        raise ValueError(f"invalid Jira URL format: {jira_url!r}")
    return segments[-1]


def ticket_data_query(with_link_name: bool = True) -> str:
    link_column = "\n  j.name AS link_name," if with_link_name else ""
    return f"""WITH TicketData AS (
  SELECT
    t.*,
    c.message AS comment
  FROM
    `{settings.jira_tickets_table}` t
  LEFT JOIN UNNEST(t.comments) AS c
  WHERE t.summary IS NOT NULL
    AND last_changed_time >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL {int(settings.bug_lookback_days)} DAY)
)
SELECT
  t.issue.key AS key,
  t.issue.id AS jira_id,
  t.summary AS summary,{link_column}
  t.last_changed_time AS last_changed_time,
  t.status.name AS status,
  ARRAY(SELECT name FROM UNNEST(affects_versions)) AS affects_versions,
  ARRAY(SELECT name FROM UNNEST(fix_versions)) AS fix_versions,
  ARRAY(SELECT name FROM UNNEST(target_versions)) AS target_versions,
  ARRAY(SELECT name FROM UNNEST(components)) AS components,
  t.labels AS labels
FROM
  TicketData t"""


_MENTIONS_NAME = (
    "(STRPOS(t.summary, j.name) > 0 OR STRPOS(t.description, j.name) > 0"
    " OR STRPOS(t.comment, j.name) > 0)"
)


@dataclass
class TicketRecord:
    """A ticket as assembled from warehouse rows, before it is persisted."""

    id: int
    key: str
    status: str = ""
    summary: str = ""
    last_change_time: datetime | None = None
    affects_versions: list[str] = field(default_factory=list)
    fix_versions: list[str] = field(default_factory=list)
    target_versions: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    url: str = ""
    tests: list[Test] = field(default_factory=list)
    jobs: list[Job] = field(default_factory=list)

    @classmethod
    def from_row(cls, ticket_id: int, row: WarehouseTicketRow) -> TicketRecord:
        return cls(
            id=ticket_id,
            key=row.key,
            status=row.status,
            summary=row.summary,
            last_change_time=row.last_changed_time,
            affects_versions=list(row.affects_versions),
            fix_versions=list(row.fix_versions),
            target_versions=list(row.target_versions),
            components=list(row.components),
            labels=list(row.labels),
            url=ticket_url(row.key),
        )

    def column_values(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "status": self.status,
            "summary": self.summary,
            "last_change_time": self.last_change_time,
            "affects_versions": self.affects_versions,
            "fix_versions": self.fix_versions,
            "target_versions": self.target_versions,
            "components": self.components,
            "labels": self.labels,
            "url": self.url,
        }


def merge_ticket_mappings(
    test_tickets: dict[int, TicketRecord],
    job_tickets: dict[int, TicketRecord],
    triage_tickets: dict[int, TicketRecord],
) -> dict[int, TicketRecord]:
    """Combine the three mappings, test mappings first.

    A job mapping replaces the Jobs of a ticket already present, even with an
    empty list. Triage mappings only add tickets nobody else reported.
    """
    merged = dict(test_tickets)
    for ticket_id, record in job_tickets.items():
        if ticket_id in merged:
            merged[ticket_id].jobs = record.jobs
            continue
        merged[ticket_id] = record
    for ticket_id, record in triage_tickets.items():
        if ticket_id not in merged:
            merged[ticket_id] = record
    return merged


class BugLoader:
    """Full resync of the tickets table from the warehouse."""

    name = "bugs"

    def __init__(
        self,
        db: AsyncSession,
        warehouse: Warehouse,
        timeout: float | None = None,
    ) -> None:
        self._db = db
        self._warehouse = warehouse
        self._timeout = timeout if timeout is not None else settings.warehouse_timeout_seconds
        self.errors: list[str] = []
        self.synced = 0

    async def load(
        self,
        test_cache: dict[str, Test],
        job_cache: dict[str, Job],
        triages: list[Triage],
    ) -> list[str]:
        """Run one reconciliation pass and return the non-fatal errors."""
        test_tickets, job_tickets, triage_tickets = await asyncio.wait_for(
            self._fetch_mappings(test_cache, job_cache, triages), self._timeout
        )

        all_tickets = merge_ticket_mappings(test_tickets, job_tickets, triage_tickets)
        logger.info("Loaded %d tickets in total", len(all_tickets))

        await self._sync_tickets(all_tickets)
        await self._relink_triages(triages)
        return self.errors

    async def _fetch_mappings(self, test_cache, job_cache, triages):
        test_tickets = await self.get_test_ticket_mappings(test_cache)
        logger.info("Loaded %d test tickets", len(test_tickets))

        job_tickets = await self.get_job_ticket_mappings(job_cache)
        logger.info("Loaded %d job tickets", len(job_tickets))

        # Triaged tickets sometimes forget to mention the test name, or the
        # mapping breaks on whitespace; pick those up by key.
        triage_tickets = await self.get_triage_ticket_mappings(triages)
        logger.info("Loaded %d triage tickets", len(triage_tickets))
        return test_tickets, job_tickets, triage_tickets

    async def get_test_ticket_mappings(self, test_cache: dict[str, Test]) -> dict[int, TicketRecord]:
        sql = (
            f"{ticket_data_query()} CROSS JOIN `{settings.component_mapping_table}` j"
            f" WHERE j.name NOT IN UNNEST(@excluded) AND {_MENTIONS_NAME}"
        )
        return await self._collect(
            sql, {"excluded": list(settings.bug_excluded_test_names)}, test_cache, "tests"
        )

    async def get_job_ticket_mappings(self, job_cache: dict[str, Job]) -> dict[int, TicketRecord]:
        sql = (
            f"{ticket_data_query()} CROSS JOIN (SELECT DISTINCT prowjob_job_name AS name"
            f" FROM `{settings.jobs_table}`"
            ' WHERE prowjob_job_name IS NOT NULL AND prowjob_job_name != "") j'
            f" WHERE {_MENTIONS_NAME}"
        )
        return await self._collect(sql, None, job_cache, "jobs")

    async def get_triage_ticket_mappings(self, triages: list[Triage]) -> dict[int, TicketRecord]:
        keys: list[str] = []
        for triage in triages:
            try:
                keys.append(parse_ticket_key_from_url(triage.url))
            except ValueError:
                logger.error("Failed to parse ticket key from triage %d url %s", triage.id, triage.url)
                raise
        if not keys:
            return {}
        sql = f"{ticket_data_query(with_link_name=False)} WHERE t.issue.key IN UNNEST(@keys)"
        return await self._collect(sql, {"keys": keys}, None, None)

    async def _collect(
        self,
        sql: str,
        params: dict | None,
        link_cache: dict | None,
        link_attr: str | None,
    ) -> dict[int, TicketRecord]:
        """Fold warehouse rows into records keyed by Jira ID.

        With a ``link_cache``, each row's ``link_name`` is resolved through it
        and appended to ``link_attr`` on the record.
        """
        logger.debug(sql)
        tickets: dict[int, TicketRecord] = {}
        async for raw in self._warehouse.query(sql, params):
            try:
                row = WarehouseTicketRow.model_validate(raw)
            except ValidationError as exc:
                self.errors.append(f"bug_row: {exc}")
                continue

            if not row.jira_id or (link_cache is not None and not row.link_name):
                continue

            try:
                ticket_id = int(row.jira_id)
            except ValueError as exc:
                self.errors.append(f"failed to convert jira id {row.jira_id}: {exc}")
                continue

            linked = None
            if link_cache is not None:
                linked = link_cache.get(row.link_name)
                if linked is None:
                    # Common: the warehouse knows far more names than we do.
                    logger.debug("%s name in ticket but not known locally: %s", link_attr, row.link_name)
                    continue

            record = tickets.get(ticket_id)
            if record is None:
                record = tickets[ticket_id] = TicketRecord.from_row(ticket_id, row)
            if linked is not None:
                links = getattr(record, link_attr)
                if all(existing.id != linked.id for existing in links):
                    links.append(linked)
        return tickets

    def _upsert_statement(self, record: TicketRecord):
        if self._db.get_bind().dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert

        values = record.column_values()
        stmt = dialect_insert(Ticket).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[Ticket.id],
            set_={column: stmt.excluded[column] for column in values if column != "id"},
        )

    async def _replace_association(self, table: Table, column: str, ticket_id: int, ids: list[int]) -> None:
        await self._db.execute(delete(table).where(table.c.ticket_id == ticket_id))
        if ids:
            await self._db.execute(
                insert(table), [{"ticket_id": ticket_id, column: linked_id} for linked_id in ids]
            )

    async def _sync_tickets(self, tickets: dict[int, TicketRecord]) -> None:
        for record in tickets.values():
            try:
                async with self._db.begin_nested():
                    await self._db.execute(self._upsert_statement(record))
            except SQLAlchemyError as exc:
                logger.error("Error creating ticket %d: %s", record.id, exc)
                self.errors.append(f"bug_upsert:{record.id}: {exc}")
                continue

            # Association tables are not touched by the upsert.
            try:
                async with self._db.begin_nested():
                    await self._replace_association(
                        ticket_tests, "test_id", record.id, [t.id for t in record.tests]
                    )
                    await self._replace_association(
                        ticket_jobs, "job_id", record.id, [j.id for j in record.jobs]
                    )
            except SQLAlchemyError as exc:
                logger.error("Error updating associations of ticket %d: %s", record.id, exc)
                self.errors.append(f"bug_associations:{record.id}: {exc}")
        self.synced = len(tickets)
        logger.info("Created or updated %d tickets", len(tickets))

        try:
            async with self._db.begin_nested():
                deleted = await self._delete_stale_tickets(list(tickets))
            logger.info("Deleted %d stale tickets", deleted)
        except SQLAlchemyError as exc:
            logger.error("Error deleting stale tickets: %s", exc)
            self.errors.append(f"bug_delete: {exc}")

        await self._db.commit()

    async def _delete_stale_tickets(self, ticket_ids: list[int]) -> int:
        """Delete tickets outside ``ticket_ids`` by anti-join on the staging table."""
        await self._db.execute(delete(ticket_sync_ids))
        if ticket_ids:
            await self._db.execute(insert(ticket_sync_ids), [{"ticket_id": i} for i in ticket_ids])
        staged = select(ticket_sync_ids.c.ticket_id)

        await self._db.execute(
            update(Triage)
            .where(Triage.ticket_id.is_not(None), Triage.ticket_id.not_in(staged))
            .values(ticket_id=None)
            .execution_options(synchronize_session=False)
        )
        for table in (ticket_tests, ticket_jobs):
            await self._db.execute(delete(table).where(table.c.ticket_id.not_in(staged)))
        result = await self._db.execute(
            delete(Ticket)
            .where(Ticket.id.not_in(staged))
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(delete(ticket_sync_ids))
        return result.rowcount or 0

    async def _relink_triages(self, triages: list[Triage]) -> None:
        """Point every triage at the ticket whose URL it stores."""
        logger.info("Ensuring triages reference their tickets")
        for stale in triages:
            triage = await self._db.get(Triage, stale.id, populate_existing=True)
            if triage is None:
                continue

            linked = None
            if triage.ticket_id is not None:
                linked = (
                    await self._db.execute(
                        select(Ticket)
                        .where(Ticket.id == triage.ticket_id)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one_or_none()
            if linked is not None and linked.url == triage.url:
                continue

            ticket = (
                await self._db.execute(
                    select(Ticket)
                    .where(Ticket.url == triage.url)
                    .limit(1)
                    .execution_options(populate_existing=True)
                )
            ).scalars().first()
            try:
                async with self._db.begin_nested():
                    if ticket is None:
                        # Bad URLs in curated data must not fail the run.
                        logger.warning(
                            "No ticket found for triage %d url %s; leaving it unlinked",
                            triage.id,
                            triage.url,
                        )
                        if triage.ticket_id is None:
                            continue
                        triage.ticket_id = None
                    else:
                        logger.info(
                            "Linking triage %r (%d) to ticket %r (%d)",
                            triage.description,
                            triage.id,
                            ticket.summary,
                            ticket.id,
                        )
                        triage.ticket_id = ticket.id
                    await self._db.flush()
            except SQLAlchemyError as exc:
                logger.error("Error linking triage %d: %s", triage.id, exc)
                self.errors.append(f"triage_link:{triage.id}: {exc}")
        await self._db.commit()
