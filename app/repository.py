"""Persistence adapters for companies, reports and observations.

Both implementations expose the same methods and hand back plain dicts, so the
services never see ORM objects or Firestore snapshots. Every report read or
write is scoped by the acting user; company access goes through the
user/company association.
"""
import datetime
import functools
import logging
import os
import uuid
from typing import Any, Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import models
from app.errors import UpstreamError

LOG = logging.getLogger(__name__)

EXTERNAL_CALL_TIMEOUT_SEC = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SEC", "30"))

COMPANY_FIELDS = ("id", "name", "cuit", "address", "industry", "created_at", "updated_at")
OBSERVATION_FIELDS = ("id", "report_id", "observation", "risk_level", "image_url", "created_at")
REPORT_FIELDS = (
    "id", "company_id", "user_id", "date", "contact", "description", "verification",
    "recommendations", "signature", "visit_confirmation", "status", "created_at", "updated_at",
)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Repository(Protocol):
    def list_companies(self, user_id: str) -> list[dict]: ...
    def get_company(self, company_id: str, user_id: str) -> dict | None: ...
    def find_company_by_cuit(self, cuit: str) -> dict | None: ...
    def insert_company(self, data: dict) -> dict: ...
    def update_company(self, company_id: str, patch: dict) -> dict: ...
    def link_user_company(self, user_id: str, company_id: str) -> None: ...
    def unlink_user_company(self, user_id: str, company_id: str) -> bool: ...
    def list_reports(self, user_id: str, company_id: str | None = None, status: str | None = None) -> list[dict]: ...
    def get_report(self, report_id: str, user_id: str) -> dict | None: ...
    def insert_report(self, row: dict) -> dict: ...
    def update_report(self, report_id: str, user_id: str, patch: dict) -> bool: ...
    def delete_report(self, report_id: str, user_id: str) -> bool: ...
    def list_observations(self, report_id: str) -> list[dict]: ...
    def insert_observations(self, rows: Iterable[dict]) -> list[dict]: ...
    def update_observation(self, observation_id: str, report_id: str, patch: dict) -> bool: ...
    def delete_observation(self, observation_id: str, report_id: str) -> bool: ...


def _pick(obj: Any, fields: Iterable[str]) -> dict:
    return {f: getattr(obj, f) for f in fields}


def _sql_errors(fn):
    """Roll back and surface driver failures as UpstreamError."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as e:
            self.db.rollback()
            LOG.warning("database call %s failed: %s", fn.__name__, e)
            raise UpstreamError(str(getattr(e, "orig", None) or e)) from e

    return wrapper


class SqlRepository:
    def __init__(self, db: Session):
        self.db = db

    def _report_dict(self, report: models.Report) -> dict:
        d = _pick(report, REPORT_FIELDS)
        d["company"] = _pick(report.company, COMPANY_FIELDS) if report.company else None
        d["observations"] = [_pick(o, OBSERVATION_FIELDS) for o in report.observations]
        return d

    def _owned_report(self, report_id: str, user_id: str) -> models.Report | None:
        return self.db.execute(
            select(models.Report)
            .options(selectinload(models.Report.observations), selectinload(models.Report.company))
            .where(models.Report.id == report_id, models.Report.user_id == user_id)
        ).scalar_one_or_none()

    # --- companies ---
    @_sql_errors
    def list_companies(self, user_id: str) -> list[dict]:
        rows = self.db.execute(
            select(models.Company)
            .join(models.UserCompany, models.UserCompany.company_id == models.Company.id)
            .where(models.UserCompany.user_id == user_id)
            .order_by(models.Company.name)
        ).scalars()
        return [_pick(c, COMPANY_FIELDS) for c in rows]

    @_sql_errors
    def get_company(self, company_id: str, user_id: str) -> dict | None:
        company = self.db.execute(
            select(models.Company)
            .join(models.UserCompany, models.UserCompany.company_id == models.Company.id)
            .where(models.Company.id == company_id, models.UserCompany.user_id == user_id)
        ).scalar_one_or_none()
        return _pick(company, COMPANY_FIELDS) if company else None

    @_sql_errors
    def find_company_by_cuit(self, cuit: str) -> dict | None:
        company = self.db.execute(select(models.Company).where(models.Company.cuit == cuit)).scalar_one_or_none()
        return _pick(company, COMPANY_FIELDS) if company else None

    @_sql_errors
    def insert_company(self, data: dict) -> dict:
        company = models.Company(**data)
        self.db.add(company)
        self.db.commit()
        self.db.refresh(company)
        return _pick(company, COMPANY_FIELDS)

    @_sql_errors
    def update_company(self, company_id: str, patch: dict) -> dict:
        company = self.db.get(models.Company, company_id)
        for key, value in patch.items():
            setattr(company, key, value)
        self.db.commit()
        self.db.refresh(company)
        return _pick(company, COMPANY_FIELDS)

    @_sql_errors
    def link_user_company(self, user_id: str, company_id: str) -> None:
        if self.db.get(models.UserCompany, (user_id, company_id)) is None:
            self.db.add(models.UserCompany(user_id=user_id, company_id=company_id))
            self.db.commit()

    @_sql_errors
    def unlink_user_company(self, user_id: str, company_id: str) -> bool:
        link = self.db.get(models.UserCompany, (user_id, company_id))
        if link is None:
            return False
        self.db.delete(link)
        self.db.commit()
        return True

    # --- reports ---
    @_sql_errors
    def list_reports(self, user_id: str, company_id: str | None = None, status: str | None = None) -> list[dict]:
        stmt = (
            select(models.Report)
            .options(selectinload(models.Report.observations), selectinload(models.Report.company))
            .where(models.Report.user_id == user_id)
        )
        if company_id:
            stmt = stmt.where(models.Report.company_id == company_id)
        if status:
            stmt = stmt.where(models.Report.status == status)
        stmt = stmt.order_by(models.Report.date.desc(), models.Report.created_at.desc())
        return [self._report_dict(r) for r in self.db.execute(stmt).scalars()]

    @_sql_errors
    def get_report(self, report_id: str, user_id: str) -> dict | None:
        # drop cached state so re-reads after writes are authoritative
        self.db.expire_all()
        report = self._owned_report(report_id, user_id)
        return self._report_dict(report) if report else None

    @_sql_errors
    def insert_report(self, row: dict) -> dict:
        report = models.Report(**row)
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)
        return _pick(report, REPORT_FIELDS)

    @_sql_errors
    def update_report(self, report_id: str, user_id: str, patch: dict) -> bool:
        report = self._owned_report(report_id, user_id)
        if report is None:
            return False
        for key, value in patch.items():
            setattr(report, key, value)
        self.db.commit()
        return True

    @_sql_errors
    def delete_report(self, report_id: str, user_id: str) -> bool:
        report = self._owned_report(report_id, user_id)
        if report is None:
            return False
        self.db.delete(report)  # observations cascade through the relationship
        self.db.commit()
        return True

    # --- observations ---
    @_sql_errors
    def list_observations(self, report_id: str) -> list[dict]:
        self.db.expire_all()
        rows = self.db.execute(
            select(models.Observation)
            .where(models.Observation.report_id == report_id)
            .order_by(models.Observation.created_at)
        ).scalars()
        return [_pick(o, OBSERVATION_FIELDS) for o in rows]

    @_sql_errors
    def insert_observations(self, rows: Iterable[dict]) -> list[dict]:
        base = _now()
        created = []
        for i, row in enumerate(rows):
            # keep submission order stable under ORDER BY created_at
            obs = models.Observation(**row, created_at=base + datetime.timedelta(microseconds=i))
            self.db.add(obs)
            created.append(obs)
        if not created:
            return []
        self.db.commit()
        for obs in created:
            self.db.refresh(obs)
        return [_pick(o, OBSERVATION_FIELDS) for o in created]

    @_sql_errors
    def update_observation(self, observation_id: str, report_id: str, patch: dict) -> bool:
        obs = self.db.execute(
            select(models.Observation).where(
                models.Observation.id == observation_id, models.Observation.report_id == report_id
            )
        ).scalar_one_or_none()
        if obs is None:
            return False
        for key, value in patch.items():
            setattr(obs, key, value)
        self.db.commit()
        return True

    @_sql_errors
    def delete_observation(self, observation_id: str, report_id: str) -> bool:
        obs = self.db.execute(
            select(models.Observation).where(
                models.Observation.id == observation_id, models.Observation.report_id == report_id
            )
        ).scalar_one_or_none()
        if obs is None:
            return False
        self.db.delete(obs)
        self.db.commit()
        return True


# --- Firestore ---

def _fs_client():
    from google.cloud import firestore

    project = os.getenv("GCP_PROJECT")
    db_id = os.getenv("FIRESTORE_DATABASE")
    # Let client pick up GOOGLE_APPLICATION_CREDENTIALS automatically
    kwargs = {}
    if project:
        kwargs["project"] = project
    if db_id:
        kwargs["database"] = db_id
    return firestore.Client(**kwargs)


def _fs_errors(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        from google.api_core import exceptions as gexc

        try:
            return fn(self, *args, **kwargs)
        except gexc.GoogleAPIError as e:
            LOG.warning("firestore call %s failed: %s", fn.__name__, e)
            raise UpstreamError(str(e)) from e

    return wrapper


def _to_date(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.date.fromisoformat(value[:10])
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


class FirestoreRepository:
    """Same contract as SqlRepository, one top-level collection per record set."""

    T = EXTERNAL_CALL_TIMEOUT_SEC

    def __init__(self, client=None):
        self.client = client or _fs_client()

    def _coll(self, name: str):
        return self.client.collection(name)

    def _link_id(self, user_id: str, company_id: str) -> str:
        return f"{user_id}_{company_id}"

    @staticmethod
    def _snap_dict(snap, fields: Iterable[str]) -> dict:
        d = snap.to_dict() or {}
        out = {f: d.get(f) for f in fields}
        out["id"] = snap.id
        return out

    def _has_link(self, user_id: str, company_id: str) -> bool:
        return self._coll("user_companies").document(self._link_id(user_id, company_id)).get(timeout=self.T).exists

    def _embed(self, snap) -> dict:
        d = self._snap_dict(snap, REPORT_FIELDS)
        d["date"] = _to_date(d.get("date"))
        d["visit_confirmation"] = bool(d.get("visit_confirmation"))
        company = self._coll("companies").document(str(d.get("company_id"))).get(timeout=self.T)
        d["company"] = self._snap_dict(company, COMPANY_FIELDS) if company.exists else None
        d["observations"] = self.list_observations(snap.id)
        return d

    def _owned_snap(self, report_id: str, user_id: str):
        snap = self._coll("reports").document(str(report_id)).get(timeout=self.T)
        if not snap.exists or (snap.to_dict() or {}).get("user_id") != user_id:
            return None
        return snap

    # --- companies ---
    @_fs_errors
    def list_companies(self, user_id: str) -> list[dict]:
        links = self._coll("user_companies").where("user_id", "==", user_id).stream(timeout=self.T)
        refs = [self._coll("companies").document((l.to_dict() or {}).get("company_id")) for l in links]
        if not refs:
            return []
        items = [self._snap_dict(s, COMPANY_FIELDS) for s in self.client.get_all(refs, timeout=self.T) if s.exists]
        items.sort(key=lambda c: c.get("name") or "")
        return items

    @_fs_errors
    def get_company(self, company_id: str, user_id: str) -> dict | None:
        if not self._has_link(user_id, company_id):
            return None
        snap = self._coll("companies").document(str(company_id)).get(timeout=self.T)
        return self._snap_dict(snap, COMPANY_FIELDS) if snap.exists else None

    @_fs_errors
    def find_company_by_cuit(self, cuit: str) -> dict | None:
        docs = list(self._coll("companies").where("cuit", "==", cuit).limit(1).stream(timeout=self.T))
        return self._snap_dict(docs[0], COMPANY_FIELDS) if docs else None

    @_fs_errors
    def insert_company(self, data: dict) -> dict:
        now = _now()
        company_id = str(uuid.uuid4())
        doc = {**data, "created_at": now, "updated_at": now}
        self._coll("companies").document(company_id).set(doc, timeout=self.T)
        return {"id": company_id, **{f: doc.get(f) for f in COMPANY_FIELDS if f != "id"}}

    @_fs_errors
    def update_company(self, company_id: str, patch: dict) -> dict:
        ref = self._coll("companies").document(str(company_id))
        ref.set({**patch, "updated_at": _now()}, merge=True, timeout=self.T)
        return self._snap_dict(ref.get(timeout=self.T), COMPANY_FIELDS)

    @_fs_errors
    def link_user_company(self, user_id: str, company_id: str) -> None:
        ref = self._coll("user_companies").document(self._link_id(user_id, company_id))
        if not ref.get(timeout=self.T).exists:
            ref.set({"user_id": user_id, "company_id": company_id, "created_at": _now()}, timeout=self.T)

    @_fs_errors
    def unlink_user_company(self, user_id: str, company_id: str) -> bool:
        ref = self._coll("user_companies").document(self._link_id(user_id, company_id))
        if not ref.get(timeout=self.T).exists:
            return False
        ref.delete(timeout=self.T)
        return True

    # --- reports ---
    @_fs_errors
    def list_reports(self, user_id: str, company_id: str | None = None, status: str | None = None) -> list[dict]:
        q = self._coll("reports").where("user_id", "==", user_id)
        if company_id:
            q = q.where("company_id", "==", company_id)
        if status:
            q = q.where("status", "==", status)
        items = [self._embed(snap) for snap in q.stream(timeout=self.T)]
        items.sort(key=lambda r: (str(r.get("date") or ""), str(r.get("created_at") or "")), reverse=True)
        return items

    @_fs_errors
    def get_report(self, report_id: str, user_id: str) -> dict | None:
        snap = self._owned_snap(report_id, user_id)
        return self._embed(snap) if snap else None

    @_fs_errors
    def insert_report(self, row: dict) -> dict:
        now = _now()
        report_id = str(uuid.uuid4())
        doc = {**row, "date": row["date"].isoformat(), "created_at": now, "updated_at": now}
        self._coll("reports").document(report_id).set(doc, timeout=self.T)
        out = {f: doc.get(f) for f in REPORT_FIELDS}
        out.update({"id": report_id, "date": row["date"]})
        return out

    @_fs_errors
    def update_report(self, report_id: str, user_id: str, patch: dict) -> bool:
        snap = self._owned_snap(report_id, user_id)
        if snap is None:
            return False
        doc = dict(patch)
        if isinstance(doc.get("date"), datetime.date):
            doc["date"] = doc["date"].isoformat()
        doc["updated_at"] = _now()
        snap.reference.set(doc, merge=True, timeout=self.T)
        return True

    @_fs_errors
    def delete_report(self, report_id: str, user_id: str) -> bool:
        snap = self._owned_snap(report_id, user_id)
        if snap is None:
            return False
        batch = self.client.batch()
        count = 0
        for obs in self._coll("observations").where("report_id", "==", str(report_id)).stream(timeout=self.T):
            batch.delete(obs.reference)
            count += 1
            if count >= 450:  # stay below Firestore 500 ops limit
                batch.commit(timeout=self.T)
                batch = self.client.batch()
                count = 0
        batch.delete(snap.reference)
        batch.commit(timeout=self.T)
        return True

    # --- observations ---
    @_fs_errors
    def list_observations(self, report_id: str) -> list[dict]:
        docs = self._coll("observations").where("report_id", "==", str(report_id)).stream(timeout=self.T)
        items = [self._snap_dict(d, OBSERVATION_FIELDS) for d in docs]
        items.sort(key=lambda o: (o.get("created_at") is None, o.get("created_at") or 0))
        return items

    @_fs_errors
    def insert_observations(self, rows: Iterable[dict]) -> list[dict]:
        base = _now()
        batch = self.client.batch()
        created = []
        for i, row in enumerate(rows):
            obs_id = str(uuid.uuid4())
            doc = {**row, "created_at": base + datetime.timedelta(microseconds=i), "updated_at": base}
            batch.set(self._coll("observations").document(obs_id), doc)
            created.append({"id": obs_id, **{f: doc.get(f) for f in OBSERVATION_FIELDS if f != "id"}})
        if created:
            batch.commit(timeout=self.T)
        return created

    def _owned_obs_ref(self, observation_id: str, report_id: str):
        ref = self._coll("observations").document(str(observation_id))
        snap = ref.get(timeout=self.T)
        if not snap.exists or (snap.to_dict() or {}).get("report_id") != str(report_id):
            return None
        return ref

    @_fs_errors
    def update_observation(self, observation_id: str, report_id: str, patch: dict) -> bool:
        ref = self._owned_obs_ref(observation_id, report_id)
        if ref is None:
            return False
        ref.set({**patch, "updated_at": _now()}, merge=True, timeout=self.T)
        return True

    @_fs_errors
    def delete_observation(self, observation_id: str, report_id: str) -> bool:
        ref = self._owned_obs_ref(observation_id, report_id)
        if ref is None:
            return False
        ref.delete(timeout=self.T)
        return True
