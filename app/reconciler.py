"""Merge a client's edited observation list into the stored one.

Planning is pure: it decides which observations are updated, inserted or
deleted and which uploaded file belongs to which of them. Applying the plan
uploads the images (concurrently, all settled before any write), then deletes,
updates and inserts rows, then removes blobs no observation points to any more.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from app.errors import ValidationError
from app.repository import Repository
from app.schemas import EditEntry, ExistingEntry
from app.storage import ImageStore, NamedBlob, delete_image, upload_image

LOG = logging.getLogger(__name__)


def existing_image_key(observation_id: str) -> str:
    return f"image_{observation_id}"


def new_image_key(temp_id: str) -> str:
    return f"image_new_{temp_id}"


@dataclass
class ObservationPatch:
    id: str
    observation: str
    risk_level: str
    image_url: Optional[str]
    previous_image_url: Optional[str]
    upload_key: Optional[str] = None


@dataclass
class NewObservationRow:
    temp_id: str
    observation: str
    risk_level: str
    image_url: Optional[str]
    upload_key: Optional[str] = None


@dataclass
class DeletedObservation:
    id: str
    image_url: Optional[str]


@dataclass
class ReconcilePlan:
    report_id: str
    to_insert: list[NewObservationRow] = field(default_factory=list)
    to_update: list[ObservationPatch] = field(default_factory=list)
    to_delete: list[DeletedObservation] = field(default_factory=list)
    uploads: dict[str, NamedBlob] = field(default_factory=dict)
    untouched_image_urls: set[str] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)


@dataclass
class ReconcileResult:
    observations: list[dict]
    # observation id (updates) or temp id (inserts) -> image url after the call
    final_image_urls: dict[str, Optional[str]]
    plan: ReconcilePlan


def _fallback_temp_id(index: int, taken: set[str]) -> str:
    candidate = f"auto-{index}"
    n = 0
    while candidate in taken:
        n += 1
        candidate = f"auto-{index}-{n}"
    return candidate


def plan_reconciliation(
    report_id: str,
    existing: Sequence[dict],
    entries: Sequence[EditEntry],
    files: Mapping[str, NamedBlob],
    deletion_ids: Iterable[str],
) -> ReconcilePlan:
    lookup = {str(o["id"]): o for o in existing}
    deletion_ids = [str(i) for i in dict.fromkeys(deletion_ids)]

    edited_ids = {e.id for e in entries if isinstance(e, ExistingEntry)}
    conflicting = sorted(edited_ids.intersection(deletion_ids))
    if conflicting:
        raise ValidationError(
            f"Observation(s) {', '.join(conflicting)} cannot be both updated and deleted in the same request"
        )

    plan = ReconcilePlan(report_id=report_id)
    client_temp_ids = {e.temp_id for e in entries if e.temp_id}
    seen_temp_ids: set[str] = set()
    consumed: set[str] = set()

    for index, entry in enumerate(entries):
        if isinstance(entry, ExistingEntry) and entry.id in lookup:
            current = lookup[entry.id]
            key = existing_image_key(entry.id)
            upload_key = key if entry.new_image and key in files else None
            if entry.new_image and upload_key is None:
                LOG.warning("observation %s flagged newImage but no %s file was sent", entry.id, key)

            if upload_key:
                image_url = None  # resolved once the upload settles
            elif entry.clears_image:
                image_url = None
            else:
                image_url = entry.supplied_image_url or current.get("image_url")

            patch = ObservationPatch(
                id=entry.id,
                observation=entry.observation or current["observation"],
                risk_level=entry.risk_level or current["risk_level"],
                image_url=image_url,
                previous_image_url=current.get("image_url"),
                upload_key=upload_key,
            )
            unchanged = (
                upload_key is None
                and patch.observation == current["observation"]
                and patch.risk_level == current["risk_level"]
                and patch.image_url == current.get("image_url")
            )
            if not unchanged:
                plan.to_update.append(patch)
            if upload_key:
                consumed.add(upload_key)
            continue

        if isinstance(entry, ExistingEntry):
            # Unknown ids are kept as new data rather than rejected
            LOG.warning("observation id %s not found on report %s; inserting as new", entry.id, report_id)
            if not entry.observation:
                raise ValidationError(f"Observation {entry.id} does not exist and has no text to insert")
        temp_id = entry.temp_id or _fallback_temp_id(index, client_temp_ids | seen_temp_ids)
        if temp_id in seen_temp_ids:
            raise ValidationError(f"Duplicate tempId '{temp_id}' in observations")
        seen_temp_ids.add(temp_id)

        key = new_image_key(temp_id)
        upload_key = key if key in files else None
        supplied = entry.supplied_image_url if isinstance(entry, ExistingEntry) else entry.image_url
        plan.to_insert.append(
            NewObservationRow(
                temp_id=temp_id,
                observation=entry.observation,
                risk_level=entry.risk_level or "low",
                image_url=None if upload_key else supplied,
                upload_key=upload_key,
            )
        )
        if upload_key:
            consumed.add(upload_key)

    for obs_id in deletion_ids:
        if obs_id in lookup:
            plan.to_delete.append(DeletedObservation(id=obs_id, image_url=lookup[obs_id].get("image_url")))
        else:
            LOG.info("deletion id %s not on report %s; ignored", obs_id, report_id)

    for key in files:
        if key not in consumed:
            LOG.warning("uploaded file field %s matched no observation; ignored", key)
    plan.uploads = {key: files[key] for key in consumed}

    touched = {p.id for p in plan.to_update} | {d.id for d in plan.to_delete}
    plan.untouched_image_urls = {
        o["image_url"] for oid, o in lookup.items() if oid not in touched and o.get("image_url")
    }
    return plan


async def upload_plan_images(plan: ReconcilePlan, store: ImageStore, user_id: str) -> dict[str, str]:
    """Upload every file the plan consumed; all or nothing."""
    keys = list(plan.uploads)
    results = await asyncio.gather(
        *(upload_image(store, plan.uploads[k], user_id) for k in keys),
        return_exceptions=True,
    )
    urls = {k: r for k, r in zip(keys, results) if not isinstance(r, BaseException)}
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        # nothing is written yet, so blobs that did land are orphans
        await asyncio.gather(*(delete_image(store, u, user_id) for u in urls.values()))
        raise errors[0]
    return urls


async def apply_reconciliation(
    plan: ReconcilePlan,
    repo: Repository,
    store: ImageStore,
    user_id: str,
    uploaded: Optional[Mapping[str, str]] = None,
) -> ReconcileResult:
    """Write the plan. Pass `uploaded` when the images were already uploaded."""
    urls = dict(uploaded) if uploaded is not None else await upload_plan_images(plan, store, user_id)
    report_id = plan.report_id
    final_urls: dict[str, Optional[str]] = {}
    stale: list[str] = []

    for deleted in plan.to_delete:
        repo.delete_observation(deleted.id, report_id)
        if deleted.image_url:
            stale.append(deleted.image_url)

    for patch in plan.to_update:
        image_url = urls[patch.upload_key] if patch.upload_key else patch.image_url
        repo.update_observation(
            patch.id,
            report_id,
            {"observation": patch.observation, "risk_level": patch.risk_level, "image_url": image_url},
        )
        final_urls[patch.id] = image_url
        if patch.previous_image_url and patch.previous_image_url != image_url:
            stale.append(patch.previous_image_url)

    rows = []
    for new in plan.to_insert:
        image_url = urls[new.upload_key] if new.upload_key else new.image_url
        final_urls[new.temp_id] = image_url
        rows.append(
            {
                "report_id": report_id,
                "observation": new.observation,
                "risk_level": new.risk_level,
                "image_url": image_url,
            }
        )
    if rows:
        repo.insert_observations(rows)

    # a blob still referenced by any remaining observation is never removed
    referenced = plan.untouched_image_urls | {u for u in final_urls.values() if u}
    doomed = [u for u in dict.fromkeys(stale) if u not in referenced]
    if doomed:
        await asyncio.gather(*(delete_image(store, u, user_id) for u in doomed))

    return ReconcileResult(
        observations=repo.list_observations(report_id),
        final_image_urls=final_urls,
        plan=plan,
    )


async def reconcile(
    report_id: str,
    existing: Sequence[dict],
    entries: Sequence[EditEntry],
    files: Mapping[str, NamedBlob],
    deletion_ids: Iterable[str],
    *,
    repo: Repository,
    store: ImageStore,
    user_id: str,
) -> ReconcileResult:
    plan = plan_reconciliation(report_id, existing, entries, files, deletion_ids)
    return await apply_reconciliation(plan, repo, store, user_id)
