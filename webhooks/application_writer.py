from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Application, File, Submission
from entities.resolver import EntityResolver
from settings.errors import ValidationError
from webhooks.schemas import ApplicationCallback, Owner

logger = logging.getLogger(__name__)

# owner 2 is all-or-none over these fields; contact details alone do not make an owner
OWNER_IDENTITY_FIELDS = ("first_name", "last_name", "date_of_birth", "ownership_pct")
OWNER_CONTACT_FIELDS = ("email", "phone", "address")


def second_owner(owner: Optional[Owner]) -> Optional[Owner]:
    """
    Returns the second owner when the record is complete, None when it is absent.

    Raises ValidationError for a partial record.
    """
    if owner is None:
        return None
    present = [f for f in OWNER_IDENTITY_FIELDS if getattr(owner, f) is not None]
    has_contact = any(getattr(owner, f) is not None for f in OWNER_CONTACT_FIELDS)
    if not present and not has_contact:
        return None
    if len(present) != len(OWNER_IDENTITY_FIELDS):
        missing = [f for f in OWNER_IDENTITY_FIELDS if f not in present]
        raise ValidationError(f"Partial owner_2 record, missing: {', '.join(missing)}")
    return owner


class ApplicationWriter:
    def __init__(self, resolver: EntityResolver) -> None:
        self.resolver = resolver

    async def write(self, session: AsyncSession, file: File, callback: ApplicationCallback) -> Application:
        payload = callback.extraction_payload
        owner_2 = second_owner(payload.owner_2)
        submission = await session.get(Submission, file.submission_id)

        company, funding, owner_1 = payload.company, payload.funding, payload.owner_1
        application = Application(
            file_id=file.id,
            submission_id=file.submission_id,
            org_id=file.org_id,
            extraction_job_id=callback.job_id,
            source=submission.ingestion_method,
            company_legal_name=company.legal_name,
            company_dba_name=company.dba_name,
            company_identifier=company.identifier,
            company_industry=company.industry,
            company_address=company.address,
            company_phone=company.phone,
            company_email=company.email,
            company_website=company.website,
            business_structure=funding.business_structure,
            business_start_date=funding.business_start_date,
            annual_revenue=funding.annual_revenue,
            amount_requested=funding.amount_requested,
            loan_purpose=funding.loan_purpose,
            owner_1_first_name=owner_1.first_name,
            owner_1_last_name=owner_1.last_name,
            owner_1_date_of_birth=owner_1.date_of_birth,
            owner_1_ownership_pct=owner_1.ownership_pct,
            owner_1_email=owner_1.email,
            owner_1_phone=owner_1.phone,
            owner_1_address=owner_1.address,
            confidence_score=payload.confidence_score,
            uncertain_fields=list(payload.uncertain_fields),
        )
        if owner_2 is not None:
            application.owner_2_first_name = owner_2.first_name
            application.owner_2_last_name = owner_2.last_name
            application.owner_2_date_of_birth = owner_2.date_of_birth
            application.owner_2_ownership_pct = owner_2.ownership_pct
            application.owner_2_email = owner_2.email
            application.owner_2_phone = owner_2.phone
            application.owner_2_address = owner_2.address
        session.add(application)
        await session.flush()

        resolved = await self.resolver.resolve(session, file.org_id, company.legal_name, company.identifier)
        application.company_id = resolved.entity_id
        if submission.company_id is None:
            submission.company_id = resolved.entity_id
        await session.flush()

        logger.info(
            "Application written",
            extra={
                "file_id": str(file.id),
                "application_id": str(application.id),
                "company_id": str(resolved.entity_id),
                "match": resolved.match.value,
            },
        )
        return application
