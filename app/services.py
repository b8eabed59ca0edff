import asyncio
import datetime
import logging
import os
from typing import Mapping, Sequence

import pydantic
from dotenv import load_dotenv

from app import schemas, utils
from app.errors import NotFoundError, UpstreamError, ValidationError
from app.reconciler import apply_reconciliation, plan_reconciliation, upload_plan_images
from app.repository import Repository
from app.storage import ImageStore, NamedBlob, delete_image, upload_image

# Load environment variables
load_dotenv()

LOG = logging.getLogger(__name__)

EXTERNAL_CALL_TIMEOUT_SEC = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SEC", "30"))


def describe_validation_errors(errors: Sequence[dict]) -> str:
    """First pydantic error as 'field: message'."""
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
    msg = err.get("msg", "Invalid value")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def validate_model(model: type[pydantic.BaseModel], data: dict):
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(describe_validation_errors(e.errors())) from e


# --- Companies ---

async def list_companies(repo: Repository, user_id: str) -> list[dict]:
    return repo.list_companies(user_id)


async def get_company(repo: Repository, company_id: str, user_id: str) -> dict:
    company = repo.get_company(company_id, user_id)
    if company is None:
        raise NotFoundError("Company not found")
    return company


async def create_company(repo: Repository, data: schemas.CompanyCreate, user_id: str) -> dict:
    """Create a company, or link the caller to the one already holding this CUIT.

    The first registration's name, address and industry are kept; later callers
    only gain an association.
    """
    company = repo.find_company_by_cuit(data.cuit)
    if company is None:
        try:
            company = repo.insert_company(data.model_dump())
        except UpstreamError:
            # lost a race on the unique CUIT
            company = repo.find_company_by_cuit(data.cuit)
            if company is None:
                raise
    else:
        LOG.info("company with cuit %s exists; linking user %s", data.cuit, user_id)
    repo.link_user_company(user_id, company["id"])
    return company


async def update_company(repo: Repository, company_id: str, data: schemas.CompanyUpdate, user_id: str) -> dict:
    current = await get_company(repo, company_id, user_id)
    patch = data.to_patch()
    if not patch:
        return current
    if "cuit" in patch and patch["cuit"] != current["cuit"]:
        other = repo.find_company_by_cuit(patch["cuit"])
        if other is not None and other["id"] != company_id:
            raise ValidationError("A company with this CUIT already exists")
    return repo.update_company(company_id, patch)


async def remove_company_association(repo: Repository, company_id: str, user_id: str) -> None:
    if not repo.unlink_user_company(user_id, company_id):
        raise NotFoundError("Company not found")


# --- Reports ---

async def list_reports(
    repo: Repository, user_id: str, company_id: str | None = None, status: str | None = None
) -> list[dict]:
    if status and status not in schemas.REPORT_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(schemas.REPORT_STATUSES)}")
    return repo.list_reports(user_id, company_id=company_id or None, status=status or None)


async def get_report(repo: Repository, report_id: str, user_id: str) -> dict:
    report = repo.get_report(report_id, user_id)
    if report is None:
        raise NotFoundError("Report not found")
    return report


async def create_report(
    repo: Repository,
    store: ImageStore,
    payload: schemas.ReportCreate,
    images: Sequence[NamedBlob],
    user_id: str,
) -> dict:
    """Insert a report and its observations; images[i] belongs to observations[i]."""
    if repo.get_company(payload.company_id, user_id) is None:
        raise NotFoundError("Company not found")

    indexed = [(i, images[i]) for i in range(min(len(images), len(payload.observations)))]
    if len(images) > len(payload.observations):
        LOG.warning("%d image(s) without a matching observation ignored", len(images) - len(payload.observations))
    results = await asyncio.gather(
        *(upload_image(store, blob, user_id) for _, blob in indexed),
        return_exceptions=True,
    )
    uploaded = {i: r for (i, _), r in zip(indexed, results) if not isinstance(r, BaseException)}
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        await asyncio.gather(*(delete_image(store, u, user_id) for u in uploaded.values()))
        raise failures[0]

    try:
        report = repo.insert_report(payload.report_row(user_id))
        rows = [
            {
                "report_id": report["id"],
                "observation": obs.observation,
                "risk_level": obs.risk_level,
                "image_url": uploaded.get(i, obs.image_url),
            }
            for i, obs in enumerate(payload.observations)
        ]
        if rows:
            try:
                repo.insert_observations(rows)
            except UpstreamError:
                repo.delete_report(report["id"], user_id)
                raise
    except UpstreamError:
        await asyncio.gather(*(delete_image(store, u, user_id) for u in uploaded.values()))
        raise
    return await get_report(repo, report["id"], user_id)


async def update_report(
    repo: Repository,
    store: ImageStore,
    report_id: str,
    payload: schemas.ReportUpdate,
    files: Mapping[str, NamedBlob],
    user_id: str,
) -> dict:
    await get_report(repo, report_id, user_id)

    try:
        entries = payload.edit_entries()
    except pydantic.ValidationError as e:
        raise ValidationError(f"observations: {describe_validation_errors(e.errors())}") from e
    except ValueError as e:
        raise ValidationError(str(e)) from e

    # an invalid observation edit must leave the report untouched
    plan = None
    if entries or payload.deletion_ids:
        existing = repo.list_observations(report_id)
        plan = plan_reconciliation(report_id, existing, entries, files, payload.deletion_ids)

    # no write happens until every upload has settled
    uploaded = await upload_plan_images(plan, store, user_id) if plan is not None else {}

    patch = payload.to_patch()
    if patch:
        try:
            repo.update_report(report_id, user_id, patch)
        except UpstreamError:
            await asyncio.gather(*(delete_image(store, u, user_id) for u in uploaded.values()))
            raise

    if plan is not None:
        result = await apply_reconciliation(plan, repo, store, user_id, uploaded=uploaded)
        LOG.info(
            "report %s: %d inserted, %d updated, %d deleted",
            report_id, len(result.plan.to_insert), len(result.plan.to_update), len(result.plan.to_delete),
        )
    elif files:
        LOG.warning("report %s: files sent without observations; ignored", report_id)
    return await get_report(repo, report_id, user_id)


async def delete_report(repo: Repository, store: ImageStore, report_id: str, user_id: str) -> None:
    report = await get_report(repo, report_id, user_id)
    if not repo.delete_report(report_id, user_id):
        raise NotFoundError("Report not found")
    urls = [o["image_url"] for o in report.get("observations") or [] if o.get("image_url")]
    if urls:
        results = await asyncio.gather(*(delete_image(store, u, user_id) for u in urls))
        if not all(results):
            LOG.warning("report %s deleted; %d image(s) could not be removed", report_id, results.count(False))


# --- PDF ---

async def render_report_pdf(repo: Repository, report_id: str, user_id: str, link_callback=None) -> bytes:
    report = await get_report(repo, report_id, user_id)
    generated_at = datetime.datetime.now()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(utils.build_report_pdf, report, generated_at, link_callback),
            EXTERNAL_CALL_TIMEOUT_SEC,
        )
    except asyncio.TimeoutError as e:
        raise UpstreamError("Error generating PDF: timed out", origin="pdf") from e
    except Exception as e:
        LOG.exception("PDF generation failed for report %s", report_id)
        raise UpstreamError("Error generating PDF", origin="pdf") from e
