"""Persistence for users, projects, scans, chain results and usage."""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from scan_orchestrator.orchestrator.errors import ScanCreationFailure
from scan_orchestrator.orchestrator.models import (
    ProjectCreate,
    ProjectView,
    QueryType,
    QueryView,
    ScanMetrics,
    ScanResultView,
    ScanResultWrite,
    ScanScores,
    ScanStatus,
    ScanTotals,
    ScanView,
    ScheduleConfig,
    ScheduleFrequency,
    UsageRecord,
    UserTier,
)
from scan_orchestrator.orchestrator.resilience import ChainLevel
from scan_orchestrator.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scan_orchestrator.storage.sqlmodel_models import (
    AppUser,
    MonthlyUsage,
    Project,
    ProjectQuery,
    Scan,
    ScanResultRow,
)

USAGE_TYPE_SCAN = "scan"
USAGE_TYPE_EVALUATION = "evaluation"


class ScanRepository:
    """Scan aggregate store: project reads, chain writes and totals."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def ensure_user(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        tier: UserTier = UserTier.FREE,
        credit_balance_cents: int = 0,
    ) -> None:
        """Create the user row when missing; existing users are left as they are."""

        with Session(self.engine) as session:
            existing = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if existing is not None:
                return
            session.add(
                AppUser(
                    user_id=user_id,
                    display_name=display_name or user_id,
                    tier=tier.value,
                    credit_balance_cents=max(0, credit_balance_cents),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        now = utc_now()
        project_id = payload.project_id or str(uuid4())
        schedule = payload.schedule
        with Session(self.engine) as session:
            session.add(
                Project(
                    project_id=project_id,
                    user_id=payload.user_id,
                    name=payload.name,
                    domain=payload.domain,
                    brand_names_json=json.dumps(payload.brand_names, ensure_ascii=False),
                    language=payload.language,
                    selected_models_json=json.dumps(payload.selected_models),
                    evaluation_model=payload.evaluation_model,
                    follow_up_enabled=payload.follow_up_enabled,
                    follow_up_depth=payload.follow_up_depth,
                    schedule_enabled=schedule is not None,
                    schedule_frequency=schedule.frequency.value if schedule is not None else None,
                    schedule_hour=schedule.hour if schedule is not None else 6,
                    schedule_day_of_week=schedule.day_of_week if schedule is not None else None,
                    schedule_day_of_month=schedule.day_of_month if schedule is not None else None,
                    schedule_timezone=payload.schedule_timezone,
                    next_scheduled_scan_at=(
                        to_db_datetime(payload.next_scheduled_scan_at)
                        if payload.next_scheduled_scan_at is not None
                        else None
                    ),
                    created_at=now,
                ),
            )
            session.flush()
            for query_text, query_type in payload.queries:
                session.add(
                    ProjectQuery(
                        query_id=str(uuid4()),
                        project_id=project_id,
                        query_text=query_text,
                        query_type=QueryType(query_type).value,
                        created_at=now,
                    ),
                )
            session.commit()
        project = self.get_project(project_id)
        if project is None:
            raise RuntimeError(f"Project disappeared after creation: {project_id}")
        return project

    def get_project(self, project_id: str) -> ProjectView | None:
        """Load a project with its active queries in creation order."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(Project.project_id == project_id),
            ).one_or_none()
            if row is None:
                return None
            queries = session.exec(
                select(ProjectQuery)
                .where(
                    ProjectQuery.project_id == project_id,
                    col(ProjectQuery.is_active).is_(True),
                )
                .order_by(col(ProjectQuery.created_at).asc(), col(ProjectQuery.query_id).asc()),
            ).all()
            return _to_project_view(row, queries)

    def list_due_projects(self, *, now: datetime) -> list[ProjectView]:
        with Session(self.engine) as session:
            project_ids = session.exec(
                select(Project.project_id)
                .where(
                    col(Project.schedule_enabled).is_(True),
                    col(Project.next_scheduled_scan_at).is_not(None),
                    col(Project.next_scheduled_scan_at) <= to_db_datetime(now),
                )
                .order_by(col(Project.next_scheduled_scan_at).asc()),
            ).all()
        projects = [self.get_project(project_id) for project_id in project_ids]
        return [project for project in projects if project is not None]

    def advance_schedule(
        self,
        *,
        project_id: str,
        expected_next_run: datetime | None,
        next_run: datetime,
    ) -> bool:
        """Move `next_scheduled_scan_at` forward if nobody else already did.

        Returns False when a concurrent tick advanced the schedule first; only
        the tick that wins this update may enqueue the scheduled scan.
        """

        expected = (
            col(Project.next_scheduled_scan_at).is_(None)
            if expected_next_run is None
            else col(Project.next_scheduled_scan_at) == to_db_datetime(expected_next_run)
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(col(Project.project_id) == project_id, expected)
                .values(next_scheduled_scan_at=to_db_datetime(next_run)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def create_scan(
        self,
        *,
        project: ProjectView,
        queue_id: str | None,
        total_queries: int,
        follow_up_depth: int,
    ) -> ScanView:
        """Insert a running scan row; storage errors become `ScanCreationFailure`."""

        scan_id = str(uuid4())
        try:
            with Session(self.engine) as session:
                row = Scan(
                    scan_id=scan_id,
                    project_id=project.project_id,
                    user_id=project.user_id,
                    queue_id=queue_id,
                    status=ScanStatus.RUNNING.value,
                    total_queries=total_queries,
                    follow_up_active=False,
                    follow_up_depth=follow_up_depth,
                    created_at=utc_now(),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return _to_scan_view(row)
        except SQLAlchemyError as error:
            raise ScanCreationFailure(f"Failed to create scan: {error}") from error

    def get_scan(self, scan_id: str) -> ScanView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Scan).where(Scan.scan_id == scan_id)).one_or_none()
            return _to_scan_view(row) if row is not None else None

    def set_scan_status(self, *, scan_id: str, status: ScanStatus) -> bool:
        """Close a scan that is still running; finished scans are left untouched."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Scan)
                .where(
                    col(Scan.scan_id) == scan_id,
                    col(Scan.status) == ScanStatus.RUNNING.value,
                )
                .values(status=status.value, completed_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def replace_chain(
        self,
        *,
        scan_id: str,
        query_id: str,
        model_id: str,
        results: Sequence[ScanResultWrite],
    ) -> None:
        """Persist one (query, model) chain, replacing any earlier attempt.

        The delete and the inserts share a transaction, so a retried chunk
        leaves exactly one chain per (scan, query, model).
        """

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_delete(ScanResultRow).where(
                    col(ScanResultRow.scan_id) == scan_id,
                    col(ScanResultRow.query_id) == query_id,
                    col(ScanResultRow.model_id) == model_id,
                ),
            )
            for result in sorted(results, key=lambda item: item.follow_up_level):
                session.add(
                    ScanResultRow(
                        result_id=result.result_id,
                        scan_id=scan_id,
                        query_id=query_id,
                        query_text=result.query_text,
                        model_id=model_id,
                        provider=result.provider,
                        response_raw=result.response_raw,
                        metrics_json=json.dumps(result.metrics.to_dict(), sort_keys=True)
                        if result.metrics is not None
                        else None,
                        input_tokens=result.input_tokens,
                        output_tokens=result.output_tokens,
                        cost_cents=result.cost_cents,
                        evaluation_input_tokens=result.evaluation_input_tokens,
                        evaluation_output_tokens=result.evaluation_output_tokens,
                        evaluation_cost_cents=result.evaluation_cost_cents,
                        is_error=result.is_error,
                        follow_up_level=result.follow_up_level,
                        follow_up_question=result.follow_up_question,
                        parent_result_id=result.parent_result_id,
                        created_at=now,
                    ),
                )
                # Parents must exist before children reference them.
                session.flush()
            session.commit()

    def completed_pairs(self, scan_id: str) -> set[tuple[str, str]]:
        """(query_id, model_id) pairs that already have a successful initial turn."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ScanResultRow.query_id, ScanResultRow.model_id).where(
                    ScanResultRow.scan_id == scan_id,
                    ScanResultRow.follow_up_level == 0,
                    col(ScanResultRow.is_error).is_(False),
                ),
            ).all()
            return {(query_id, model_id) for query_id, model_id in rows}

    def refresh_totals(self, scan_id: str) -> ScanTotals:
        """Recompute running totals from persisted results and store them."""

        with Session(self.engine) as session:
            row = session.exec(
                select(
                    func.count(col(ScanResultRow.result_id)).filter(
                        col(ScanResultRow.is_error).is_(False),
                    ),
                    func.coalesce(
                        func.sum(ScanResultRow.cost_cents + ScanResultRow.evaluation_cost_cents),
                        0,
                    ),
                    func.coalesce(
                        func.sum(
                            ScanResultRow.input_tokens + ScanResultRow.evaluation_input_tokens,
                        ),
                        0,
                    ),
                    func.coalesce(
                        func.sum(
                            ScanResultRow.output_tokens + ScanResultRow.evaluation_output_tokens,
                        ),
                        0,
                    ),
                ).where(ScanResultRow.scan_id == scan_id),
            ).one()
            totals = ScanTotals(
                total_results=int(row[0]),
                total_cost_cents=int(row[1]),
                total_input_tokens=int(row[2]),
                total_output_tokens=int(row[3]),
            )
            session.exec(
                sa_update(Scan)
                .where(col(Scan.scan_id) == scan_id)
                .values(
                    total_results=totals.total_results,
                    total_cost_cents=totals.total_cost_cents,
                    total_input_tokens=totals.total_input_tokens,
                    total_output_tokens=totals.total_output_tokens,
                ),
            )
            session.commit()
            return totals

    def list_results(self, scan_id: str) -> list[ScanResultView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScanResultRow)
                .where(ScanResultRow.scan_id == scan_id)
                .order_by(
                    col(ScanResultRow.query_id).asc(),
                    col(ScanResultRow.model_id).asc(),
                    col(ScanResultRow.follow_up_level).asc(),
                ),
            ).all()
            return [_to_result_view(row) for row in rows]

    def list_chains(self, scan_id: str) -> list[list[ChainLevel]]:
        """Group persisted results into per (query, model) chains ordered by level."""

        chains: dict[tuple[str, str], list[ChainLevel]] = defaultdict(list)
        for result in self.list_results(scan_id):
            if result.is_error:
                continue
            chains[(result.query_id, result.model_id)].append(
                ChainLevel(level=result.follow_up_level, metrics=result.metrics),
            )
        return [chains[key] for key in sorted(chains)]

    def finalize_scan(
        self,
        *,
        scan_id: str,
        status: ScanStatus,
        scores: ScanScores | None,
    ) -> ScanView:
        """Fold final scores and status into the scan row."""

        values: dict[str, object] = {
            "status": status.value,
            "completed_at": to_db_datetime(utc_now()),
        }
        if scores is not None:
            values.update(
                overall_score=scores.overall_score,
                avg_visibility=scores.avg_visibility,
                avg_sentiment=scores.avg_sentiment,
                avg_ranking=scores.avg_ranking,
                initial_score=scores.initial_score,
                conversational_bonus=scores.conversational_bonus,
                brand_persistence=scores.brand_persistence,
                sentiment_stability=scores.sentiment_stability,
                final_score=scores.final_score,
                follow_up_active=scores.follow_up_active,
            )
        with Session(self.engine) as session:
            session.exec(sa_update(Scan).where(col(Scan.scan_id) == scan_id).values(**values))
            session.commit()
            row = session.exec(select(Scan).where(Scan.scan_id == scan_id)).one()
            return _to_scan_view(row)

    def usage_records(
        self,
        scan_id: str,
        *,
        evaluation_model_id: str | None,
        evaluation_provider: str | None,
    ) -> list[UsageRecord]:
        """Per-model probe usage plus one evaluation record for the scan."""

        with Session(self.engine) as session:
            probe_rows = session.exec(
                select(
                    ScanResultRow.provider,
                    ScanResultRow.model_id,
                    func.sum(ScanResultRow.input_tokens),
                    func.sum(ScanResultRow.output_tokens),
                    func.sum(ScanResultRow.cost_cents),
                )
                .where(
                    ScanResultRow.scan_id == scan_id,
                    col(ScanResultRow.is_error).is_(False),
                )
                .group_by(col(ScanResultRow.provider), col(ScanResultRow.model_id))
                .order_by(col(ScanResultRow.model_id).asc()),
            ).all()
            evaluation = session.exec(
                select(
                    func.coalesce(func.sum(ScanResultRow.evaluation_input_tokens), 0),
                    func.coalesce(func.sum(ScanResultRow.evaluation_output_tokens), 0),
                    func.coalesce(func.sum(ScanResultRow.evaluation_cost_cents), 0),
                ).where(ScanResultRow.scan_id == scan_id),
            ).one()

        records = [
            UsageRecord(
                provider=provider,
                model_id=model_id,
                usage_type=USAGE_TYPE_SCAN,
                input_tokens=int(input_tokens or 0),
                output_tokens=int(output_tokens or 0),
                cost_cents=int(cost_cents or 0),
            )
            for provider, model_id, input_tokens, output_tokens, cost_cents in probe_rows
        ]
        if evaluation_model_id and evaluation_provider and any(int(v) for v in evaluation):
            records.append(
                UsageRecord(
                    provider=evaluation_provider,
                    model_id=evaluation_model_id,
                    usage_type=USAGE_TYPE_EVALUATION,
                    input_tokens=int(evaluation[0]),
                    output_tokens=int(evaluation[1]),
                    cost_cents=int(evaluation[2]),
                ),
            )
        return records

    def record_monthly_usage(
        self,
        *,
        user_id: str,
        records: Sequence[UsageRecord],
        month: str | None = None,
    ) -> None:
        """Upsert usage accumulators for (user, month, provider, model, type)."""

        if not records:
            return
        now = utc_now()
        bucket = month or now.strftime("%Y-%m")
        table = MonthlyUsage.__table__  # type: ignore[attr-defined]
        with Session(self.engine) as session:
            for record in records:
                statement = sqlite_insert(table).values(
                    user_id=user_id,
                    month=bucket,
                    provider=record.provider,
                    model_id=record.model_id,
                    usage_type=record.usage_type,
                    total_input_tokens=record.input_tokens,
                    total_output_tokens=record.output_tokens,
                    total_cost_cents=record.cost_cents,
                    call_count=1,
                    updated_at=to_db_datetime(now),
                )
                session.exec(
                    statement.on_conflict_do_update(
                        index_elements=["user_id", "month", "provider", "model_id", "usage_type"],
                        set_={
                            "total_input_tokens": table.c.total_input_tokens
                            + statement.excluded.total_input_tokens,
                            "total_output_tokens": table.c.total_output_tokens
                            + statement.excluded.total_output_tokens,
                            "total_cost_cents": table.c.total_cost_cents
                            + statement.excluded.total_cost_cents,
                            "call_count": table.c.call_count + 1,
                            "updated_at": statement.excluded.updated_at,
                        },
                    ),
                )
            session.commit()

    def monthly_usage(self, *, user_id: str, month: str) -> list[UsageRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MonthlyUsage)
                .where(MonthlyUsage.user_id == user_id, MonthlyUsage.month == month)
                .order_by(col(MonthlyUsage.model_id).asc(), col(MonthlyUsage.usage_type).asc()),
            ).all()
            return [
                UsageRecord(
                    provider=row.provider,
                    model_id=row.model_id,
                    usage_type=row.usage_type,
                    input_tokens=row.total_input_tokens,
                    output_tokens=row.total_output_tokens,
                    cost_cents=row.total_cost_cents,
                )
                for row in rows
            ]


def _to_project_view(row: Project, queries: Sequence[ProjectQuery]) -> ProjectView:
    schedule = None
    if row.schedule_frequency:
        schedule = ScheduleConfig(
            frequency=ScheduleFrequency(row.schedule_frequency),
            hour=row.schedule_hour,
            day_of_week=row.schedule_day_of_week,
            day_of_month=row.schedule_day_of_month,
        )
    return ProjectView(
        project_id=row.project_id,
        user_id=row.user_id,
        name=row.name,
        domain=row.domain,
        brand_names=_json_list(row.brand_names_json),
        language=row.language,
        selected_models=_json_list(row.selected_models_json),
        evaluation_model=row.evaluation_model,
        follow_up_enabled=row.follow_up_enabled,
        follow_up_depth=row.follow_up_depth,
        schedule_enabled=row.schedule_enabled,
        schedule=schedule,
        schedule_timezone=row.schedule_timezone,
        next_scheduled_scan_at=optional_utc(row.next_scheduled_scan_at),
        queries=[
            QueryView(
                query_id=query.query_id,
                query_text=query.query_text,
                query_type=_query_type(query.query_type),
            )
            for query in queries
        ],
    )


def _to_scan_view(row: Scan) -> ScanView:
    return ScanView(
        scan_id=row.scan_id,
        project_id=row.project_id,
        user_id=row.user_id,
        queue_id=row.queue_id,
        status=ScanStatus(row.status),
        total_queries=row.total_queries,
        total_results=row.total_results,
        total_cost_cents=row.total_cost_cents,
        total_input_tokens=row.total_input_tokens,
        total_output_tokens=row.total_output_tokens,
        overall_score=row.overall_score,
        initial_score=row.initial_score,
        conversational_bonus=row.conversational_bonus,
        brand_persistence=row.brand_persistence,
        sentiment_stability=row.sentiment_stability,
        final_score=row.final_score,
        follow_up_active=row.follow_up_active,
        follow_up_depth=row.follow_up_depth,
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_result_view(row: ScanResultRow) -> ScanResultView:
    return ScanResultView(
        result_id=row.result_id,
        query_id=row.query_id,
        model_id=row.model_id,
        provider=row.provider,
        metrics=ScanMetrics.from_dict(json.loads(row.metrics_json))
        if row.metrics_json
        else None,
        cost_cents=row.cost_cents,
        evaluation_cost_cents=row.evaluation_cost_cents,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        is_error=row.is_error,
        follow_up_level=row.follow_up_level,
        parent_result_id=row.parent_result_id,
    )


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    payload = json.loads(raw)
    if not isinstance(payload, list):
        return []
    return [str(item) for item in payload if str(item).strip()]


def _query_type(raw: str) -> QueryType:
    try:
        return QueryType(raw)
    except ValueError:
        return QueryType.INFORMATIONAL
