from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from crmflow.activity.service import ActivityLogService
from crmflow.automation.service import DealStageAutomationService
from crmflow.core.auth import AuthUser, get_current_user
from crmflow.core.config import get_settings
from crmflow.core.database import get_db
from crmflow.documents.conversion import ConversionService
from crmflow.documents.lifecycle import DocumentLifecycleService
from crmflow.documents.service import DocumentService
from crmflow.errors import ConversionError, DocumentCreationError, DuplicateQuoteError, EntityNotFoundError, StoreError
from crmflow.pipelines.service import StageResolver
from crmflow.store.client import EntityStore, PostgrestEntityStore
from crmflow.store.factory import create_entity_store


def get_entity_store(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),  # binds the user id used on activity rows
) -> Generator[EntityStore, None, None]:
    store = create_entity_store(get_settings(), db)
    try:
        yield store
    finally:
        if isinstance(store, PostgrestEntityStore):
            store.close()


def get_stage_resolver(store: EntityStore = Depends(get_entity_store)) -> StageResolver:
    return StageResolver(store)


def get_activity_log(store: EntityStore = Depends(get_entity_store)) -> ActivityLogService:
    return ActivityLogService(store)


def get_automation_service(store: EntityStore = Depends(get_entity_store)) -> DealStageAutomationService:
    return DealStageAutomationService.from_store(store)


def get_conversion_service(store: EntityStore = Depends(get_entity_store)) -> ConversionService:
    return ConversionService(
        store=store,
        documents=DocumentService(store),
        activity_log=ActivityLogService(store),
        automation=DealStageAutomationService.from_store(store),
        settings=get_settings(),
    )


def get_lifecycle_service(
    store: EntityStore = Depends(get_entity_store),
    conversions: ConversionService = Depends(get_conversion_service),
) -> DocumentLifecycleService:
    return DocumentLifecycleService(
        store=store,
        documents=conversions.documents,
        conversions=conversions,
        activity_log=conversions.activity_log,
        automation=conversions.automation,
    )


@contextmanager
def http_errors() -> Iterator[None]:
    try:
        yield
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DuplicateQuoteError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (ConversionError, DocumentCreationError, StoreError) as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
