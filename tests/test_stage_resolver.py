from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.core.database import Base
from crmflow.errors import StoreError
from crmflow.pipelines.service import StageResolver
from crmflow.store import SqlEntityStore
from crmflow.store.models import Pipeline, Stage


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _pipeline(session: Session, name: str, stage_names: list[str]) -> tuple[str, dict[str, str]]:
    pipeline = Pipeline(name=name)
    session.add(pipeline)
    session.flush()
    ids: dict[str, str] = {}
    for position, stage_name in enumerate(stage_names):
        stage = Stage(pipeline_id=pipeline.id, name=stage_name, position=position)
        session.add(stage)
        session.flush()
        ids.setdefault(stage_name, stage.id)
    session.commit()
    return pipeline.id, ids


class BrokenStore:
    def select(self, resource, filters=None, *, columns="*", order=None, limit=None):  # type: ignore[no-untyped-def]
        raise StoreError("store unavailable", status_code=503)


def test_resolve_stage_id_is_case_insensitive_and_scoped(db_session: Session) -> None:
    sales_id, sales = _pipeline(db_session, "Sales", ["Prospecting", "Proposal", "Won"])
    renewals_id, renewals = _pipeline(db_session, "Renewals", ["Prospecting", "Won"])
    resolver = StageResolver(SqlEntityStore(db_session))

    assert resolver.resolve_stage_id("won", sales_id) == sales["Won"]
    assert resolver.resolve_stage_id("  WON ", renewals_id) == renewals["Won"]
    assert resolver.resolve_stage_id("Proposal", renewals_id) is None
    assert resolver.resolve_stage_id("Missing", sales_id) is None
    assert resolver.resolve_stage_id("", sales_id) is None


def test_names_with_wildcard_characters_match_literally(db_session: Session) -> None:
    pipeline_id, stages = _pipeline(db_session, "Odd", ["50% done", "50_ done"])
    resolver = StageResolver(SqlEntityStore(db_session))

    assert resolver.resolve_stage_id("50% DONE", pipeline_id) == stages["50% done"]
    assert resolver.resolve_stage_id("50_ done", pipeline_id) == stages["50_ done"]
    assert resolver.resolve_stage_id("50x done", pipeline_id) is None


def test_duplicate_names_resolve_to_first_by_position(db_session: Session) -> None:
    pipeline_id, stages = _pipeline(db_session, "Dupes", ["Won", "Review", "won"])
    resolver = StageResolver(SqlEntityStore(db_session))

    assert resolver.resolve_stage_id("WON", pipeline_id) == stages["Won"]


def test_reverse_lookups(db_session: Session) -> None:
    pipeline_id, stages = _pipeline(db_session, "Sales", ["Prospecting", "Won"])
    resolver = StageResolver(SqlEntityStore(db_session))

    assert resolver.resolve_stage_name(stages["Won"]) == "Won"
    assert resolver.resolve_pipeline_id(stages["Won"]) == pipeline_id
    assert resolver.resolve_stage_name("missing") is None
    assert resolver.resolve_pipeline_id("missing") is None


def test_list_stages_ordered_by_position(db_session: Session) -> None:
    pipeline_id, _ = _pipeline(db_session, "Sales", ["Prospecting", "Proposal", "Negotiation", "Won", "Lost"])
    resolver = StageResolver(SqlEntityStore(db_session))

    stages = resolver.list_stages(pipeline_id)

    assert [stage.name for stage in stages] == ["Prospecting", "Proposal", "Negotiation", "Won", "Lost"]
    assert [stage.position for stage in stages] == [0, 1, 2, 3, 4]


def test_store_errors_read_as_not_found() -> None:
    resolver = StageResolver(BrokenStore())  # type: ignore[arg-type]

    assert resolver.resolve_stage_id("Won", "p1") is None
    assert resolver.resolve_stage_name("s1") is None
    assert resolver.resolve_pipeline_id("s1") is None


def test_database_errors_read_as_not_found(db_session: Session) -> None:
    pipeline_id, ids = _pipeline(db_session, "Sales", ["Prospecting", "Won"])
    Stage.__table__.drop(bind=db_session.get_bind())
    resolver = StageResolver(SqlEntityStore(db_session))

    assert resolver.resolve_stage_id("Won", pipeline_id) is None
    assert resolver.resolve_stage_name(ids["Won"]) is None
    assert resolver.resolve_pipeline_id(ids["Won"]) is None
