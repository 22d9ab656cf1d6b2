"""
FastAPI Dependencies
Billing service wiring shared by the routes.
Source: https://fastapi.tiangolo.com/tutorial/dependencies/
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.enums import ControlNumberName
from medbill.services.billing.audit import AuditEmitter, LoggingAuditEmitter
from medbill.services.billing.claim_store import ClaimStore, SqlClaimStore
from medbill.services.billing.code_tables import SqlCodeTable
from medbill.services.billing.decision_engine import create_decision_engine
from medbill.services.billing.fee_resolver import FeeResolver, SqlFeeScheduleSource
from medbill.services.billing.pipeline import BillingPipeline, create_billing_pipeline
from medbill.services.billing.suggestions import SuggestionSource
from medbill.services.edi.control_numbers import SqlControlNumberSequencer


@dataclass
class BillingServices:
    """Everything the billing routes need, built once per application."""

    pipeline: BillingPipeline
    fee_resolver: FeeResolver
    store: Optional[ClaimStore] = None


def build_sql_services(
    session_maker: async_sessionmaker[AsyncSession],
    settings: Optional[BillingSettings] = None,
    audit: Optional[AuditEmitter] = None,
    suggestion_sources: Optional[list[SuggestionSource]] = None,
) -> BillingServices:
    """Wire the pipeline against the billing database."""
    settings = settings or get_billing_settings()
    audit = audit or LoggingAuditEmitter()
    code_table = SqlCodeTable(session_maker)
    fee_resolver = FeeResolver.build(
        SqlFeeScheduleSource(session_maker),
        code_table=code_table,
        settings=settings,
        audit=audit,
    )
    engine = create_decision_engine(code_table, fee_resolver, settings=settings)
    store = SqlClaimStore(session_maker)
    pipeline = create_billing_pipeline(
        engine,
        SqlControlNumberSequencer(
            session_maker,
            policies={name: settings.overflow_policy(name) for name in ControlNumberName},
        ),
        store=store,
        suggestion_sources=suggestion_sources,
        audit=audit,
        settings=settings,
    )
    return BillingServices(pipeline=pipeline, fee_resolver=fee_resolver, store=store)


def get_billing_services(request: Request) -> BillingServices:
    return request.app.state.billing


def get_pipeline(request: Request) -> BillingPipeline:
    return get_billing_services(request).pipeline


def get_fee_resolver(request: Request) -> FeeResolver:
    return get_billing_services(request).fee_resolver
