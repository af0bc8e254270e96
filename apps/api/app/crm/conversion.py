from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.authz.catalog import PermissionKey
from app.authz.gate import ensure_authorized
from app.crm.activity import record_activity_safe
from app.crm.models import CRMCustomer, CRMLead
from app.crm.schemas import CustomerRead, LeadConvertRequest
from app.metrics import observe_lead_conversion
from app.notifications.emitter import NotificationEventInput, emit_safe
from app.notifications.recipients import build_recipient_list
from app.platform.security.context import AuthedUser


logger = logging.getLogger("app.crm.conversion")

CONVERTED_LEAD_STATUS = "proposal"


@dataclass(slots=True)
class ConversionResult:
    customer: CustomerRead
    created: bool


class LeadConversionService:
    """Lead to customer conversion that is safe to repeat.

    An existing customer is looked up by ``lead_id`` first and by email second.
    ``crm_customer.lead_id`` is unique, so two concurrent conversions of one lead
    cannot both insert; the loser returns the winner's row. The email fallback is
    an application-level check only.
    """

    def convert(
        self,
        session: Session,
        actor: AuthedUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
    ) -> ConversionResult:
        ensure_authorized(actor, [PermissionKey.ADMIN, PermissionKey.CUSTOMER_CREATE])

        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")

        email = str(dto.email) if dto.email else lead.email
        existing = self.find_existing_customer(session, lead.id, email)
        if existing is not None:
            observe_lead_conversion("existing")
            logger.info(
                "crm.lead_conversion_reused",
                extra={"lead_id": str(lead.id), "customer_id": str(existing.id)},
            )
            return ConversionResult(customer=CustomerRead.model_validate(existing), created=False)

        customer = CRMCustomer(
            company_name=(dto.company_name or lead.company or lead.name).strip(),
            contact_person=(dto.contact_person or lead.name).strip(),
            email=email.strip() if email else None,
            phone=dto.phone or lead.phone,
            source=dto.source or lead.source,
            status=dto.status,
            assigned_to=dto.assigned_to or lead.owner_id,
            lead_id=lead.id,
            created_by=actor.id,
        )
        session.add(customer)
        if lead.status != CONVERTED_LEAD_STATUS:
            lead.status = CONVERTED_LEAD_STATUS
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = session.scalar(select(CRMCustomer).where(CRMCustomer.lead_id == lead_id))
            if winner is None:
                raise
            observe_lead_conversion("race_lost")
            logger.warning(
                "crm.lead_conversion_race",
                extra={"lead_id": str(lead_id), "customer_id": str(winner.id)},
            )
            return ConversionResult(customer=CustomerRead.model_validate(winner), created=False)
        session.refresh(customer)
        result = CustomerRead.model_validate(customer)
        observe_lead_conversion("created")

        record_activity_safe(session, "lead", lead.id, "Converted to customer.", actor_id=actor.id)
        emit_safe(
            session,
            NotificationEventInput(
                type="lead.converted",
                title="Lead Converted",
                body=f"{actor.full_name or 'Someone'} converted {lead.name} to a customer.",
                actor_id=actor.id,
                recipients=build_recipient_list(lead.owner_id, [], actor.id),
                entity_type="lead",
                entity_id=str(lead.id),
                meta={"customer_id": str(result.id)},
            ),
        )
        return ConversionResult(customer=result, created=True)

    def find_existing_customer(self, session: Session, lead_id: uuid.UUID, email: str | None) -> CRMCustomer | None:
        by_lead = session.scalar(select(CRMCustomer).where(CRMCustomer.lead_id == lead_id))
        if by_lead is not None:
            return by_lead
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        return session.scalar(
            select(CRMCustomer)
            .where(func.lower(CRMCustomer.email) == normalized)
            .order_by(CRMCustomer.created_at.asc())
            .limit(1)
        )


lead_conversion_service = LeadConversionService()
