"""Per-viewer change notifications derived by diffing appointment snapshots.

There is no push channel: each run compares the viewer's last snapshot with the current
appointment set, emits what changed and stores the new snapshot as the baseline.
State lives in four keys per viewer (``snapshot``, ``dismissed``, ``sent``, ``items``).
"""
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, ClassVar
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.models.appointment import Appointment, digits_only, utc_now
from app.models.notification import Notification, NotificationType
from app.services.conflicts import to_datetime
from app.services.kv_store import KVStore, Listener
from app.services.viewer import Viewer

logger = logging.getLogger(__name__)

NOTIFS_PREFIX = "mc_notifs_v1_"

_STATUS_ALIASES = {
    "cancel": "cancelled",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "complete": "completed",
    "completed": "completed",
    "done": "completed",
    "booked": "scheduled",
    "scheduled": "scheduled",
    "": "scheduled",
}


def state_key(viewer_key: str, part: str) -> str:
    return f"{NOTIFS_PREFIX}{part}_{viewer_key}"


def normalize_status(value: Any) -> str:
    s = str(getattr(value, "value", value) or "").strip().lower()
    return _STATUS_ALIASES.get(s, s)


def _ms(value: datetime | None) -> str:
    return str(int(value.timestamp() * 1000)) if value is not None else "NaN"


@dataclass(frozen=True)
class SnapshotRecord:
    """Minimal comparable view of one appointment."""

    id: str
    therapist_id: str
    patient_id: str
    start: datetime
    end: datetime
    status: str

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "therapistId": self.therapist_id,
            "patientId": self.patient_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status,
        }

    @classmethod
    def from_any(cls, item: Any) -> "SnapshotRecord | None":
        """Build from an Appointment, a stored dict or a persisted snapshot entry."""
        if isinstance(item, Appointment):
            get = lambda name, alias: getattr(item, name)  # noqa: E731
        elif isinstance(item, dict):
            get = lambda name, alias: item.get(alias, item.get(name))  # noqa: E731
        else:
            return None
        rid = str(get("id", "id") or "").strip()
        start = to_datetime(get("start", "start"))
        end = to_datetime(get("end", "end"))
        if not rid or start is None or end is None:
            return None
        return cls(
            id=rid,
            therapist_id=str(get("therapist_id", "therapistId") or "").strip(),
            patient_id=digits_only(get("patient_id", "patientId")),
            start=start,
            end=end,
            status=normalize_status(get("status", "status")),
        )


def build_snapshot(appointments: Iterable[Any], therapist_id: str | None = None) -> dict[str, SnapshotRecord]:
    """Projection keyed by id; ``therapist_id=None`` keeps every therapist."""
    tid = therapist_id.strip() if therapist_id is not None else None
    out: dict[str, SnapshotRecord] = {}
    for item in appointments or []:
        record = SnapshotRecord.from_any(item)
        if record is None:
            continue
        if tid is not None and record.therapist_id != tid:
            continue
        out[record.id] = record
    return out


class Formatter:
    """Dates as D/M/YYYY and times as HH:MM, on the clinic's wall clock."""

    def __init__(self, tz: tzinfo) -> None:
        self.tz = tz

    def dmy(self, value: datetime) -> str:
        d = value.astimezone(self.tz)
        return f"{d.day}/{d.month}/{d.year}"

    def hm(self, value: datetime) -> str:
        return value.astimezone(self.tz).strftime("%H:%M")


class ChangeKind:
    kind: ClassVar[str]
    type: ClassVar[NotificationType]
    title: ClassVar[str]

    @property
    def notification_id(self) -> str:
        raise NotImplementedError

    def message(self, label: str, fmt: Formatter) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class Created(ChangeKind):
    record: SnapshotRecord

    kind: ClassVar[str] = "created"
    type: ClassVar[NotificationType] = NotificationType.success
    title: ClassVar[str] = "New appointment"

    @property
    def notification_id(self) -> str:
        return f"created:{self.record.id}:{_ms(self.record.start)}"

    def message(self, label: str, fmt: Formatter) -> str:
        when = f"{fmt.dmy(self.record.start)} {fmt.hm(self.record.start)}-{fmt.hm(self.record.end)}"
        return f"{label} scheduled: {when}."


@dataclass(frozen=True)
class Cancelled(ChangeKind):
    record: SnapshotRecord

    kind: ClassVar[str] = "cancelled"
    type: ClassVar[NotificationType] = NotificationType.error
    title: ClassVar[str] = "Appointment cancelled"

    @property
    def notification_id(self) -> str:
        return f"cancelled:{self.record.id}:{_ms(self.record.start)}"

    def message(self, label: str, fmt: Formatter) -> str:
        return f"{label} ({fmt.dmy(self.record.start)} {fmt.hm(self.record.start)}) was cancelled."


@dataclass(frozen=True)
class Removed(ChangeKind):
    record: SnapshotRecord

    kind: ClassVar[str] = "removed"
    type: ClassVar[NotificationType] = NotificationType.error
    title: ClassVar[str] = "Appointment removed"

    @property
    def notification_id(self) -> str:
        return f"removed:{self.record.id}:{_ms(self.record.start)}"

    def message(self, label: str, fmt: Formatter) -> str:
        return f"{label} ({fmt.dmy(self.record.start)} {fmt.hm(self.record.start)}) was removed."


@dataclass(frozen=True)
class TimeChanged(ChangeKind):
    record: SnapshotRecord
    previous_start: datetime

    kind: ClassVar[str] = "time"
    type: ClassVar[NotificationType] = NotificationType.info
    title: ClassVar[str] = "Time changed"

    @property
    def notification_id(self) -> str:
        return f"time:{self.record.id}:{_ms(self.previous_start)}->{_ms(self.record.start)}"

    @property
    def cooldown_key(self) -> str:
        return f"time:{self.record.id}"

    def message(self, label: str, fmt: Formatter) -> str:
        return (
            f"{label} moved on {fmt.dmy(self.record.start)} "
            f"from {fmt.hm(self.previous_start)} to {fmt.hm(self.record.start)}."
        )


def diff_snapshots(
    prev: dict[str, SnapshotRecord], nxt: dict[str, SnapshotRecord], include_created: bool = True
) -> list[ChangeKind]:
    """Changes between two snapshots, in emission order (current ids first, then removals)."""
    changes: list[ChangeKind] = []
    for rid, record in nxt.items():
        before = prev.get(rid)
        if before is None:
            if include_created:
                changes.append(Created(record))
            continue
        if before.status != "cancelled" and record.status == "cancelled":
            changes.append(Cancelled(record))
            continue
        if before.start != record.start or before.end != record.end:
            changes.append(TimeChanged(record, previous_start=before.start))
    for rid, before in prev.items():
        if rid not in nxt:
            changes.append(Removed(before))
    return changes


LabelFor = Callable[[SnapshotRecord], str]


class NotificationService:
    def __init__(
        self,
        kv: KVStore,
        clock: Callable[[], datetime] = utc_now,
        cooldown_seconds: int | None = None,
        feed_limit: int | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self.kv = kv
        self._clock = clock
        self.cooldown = timedelta(
            seconds=settings.notification_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self.feed_limit = settings.notification_feed_limit if feed_limit is None else feed_limit
        self.fmt = Formatter(tz or ZoneInfo(settings.clinic_timezone))

    async def compute_and_store(
        self, viewer: Viewer, appointments: Iterable[Any], label_for: LabelFor | None = None
    ) -> list[Notification]:
        """Diff ``appointments`` against the viewer's last snapshot and advance the baseline.

        Returns what was emitted by this call. Therapists also get the emitted items
        merged into their persisted feed.
        """
        key = viewer.key
        prev = await self._load_snapshot(key)
        nxt = build_snapshot(appointments, None if viewer.is_admin else viewer.therapist_id)
        dismissed = set(await self.dismissed_ids(viewer))
        sent = await self.kv.get_json(state_key(key, "sent"), {})

        now = self._clock()
        now_ms = int(now.timestamp() * 1000)
        window_ms = int(self.cooldown.total_seconds() * 1000)
        emitted: list[Notification] = []
        sent_changed = False

        for change in diff_snapshots(prev, nxt, include_created=not viewer.is_admin):
            nid = change.notification_id
            if nid in dismissed:
                continue
            if isinstance(change, TimeChanged):
                last = sent.get(change.cooldown_key)
                if isinstance(last, (int, float)) and now_ms - last <= window_ms:
                    logger.debug("Suppressing %s for %s (cooldown)", nid, key)
                    continue
                sent[change.cooldown_key] = now_ms
                sent[nid] = now_ms
                sent_changed = True
            label = (label_for(change.record) if label_for else "") or "Appointment"
            emitted.append(
                Notification(
                    id=nid,
                    type=change.type,
                    title=change.title,
                    message=change.message(label, self.fmt),
                    created_at=now,
                )
            )

        if sent_changed:
            cutoff = now_ms - window_ms
            sent = {k: v for k, v in sent.items() if isinstance(v, (int, float)) and v >= cutoff}
            await self.kv.set_json(state_key(key, "sent"), sent)

        await self.kv.set_json(state_key(key, "snapshot"), {rid: r.to_json() for rid, r in nxt.items()})

        if not viewer.is_admin and emitted:
            merged = _unique_by_id([*emitted, *await self.stored(viewer)])[: self.feed_limit]
            await self.kv.set_json(state_key(key, "items"), [n.to_json() for n in merged])

        if emitted:
            logger.info("%d notification(s) for %s", len(emitted), key)
        return emitted

    async def dismissed_ids(self, viewer: Viewer) -> list[str]:
        raw = await self.kv.get_json(state_key(viewer.key, "dismissed"), [])
        return [str(x) for x in raw if x]

    async def dismiss(self, viewer: Viewer, ids: Iterable[str]) -> list[str]:
        wanted = [str(i) for i in ids if i]
        dismissed = list(dict.fromkeys([*await self.dismissed_ids(viewer), *wanted]))
        await self.kv.set_json(state_key(viewer.key, "dismissed"), dismissed)
        await self.clear_stored(viewer, wanted)
        return dismissed

    async def stored(self, viewer: Viewer) -> list[Notification]:
        raw = await self.kv.get_json(state_key(viewer.key, "items"), [])
        items: list[Notification] = []
        for entry in raw:
            try:
                items.append(Notification.model_validate(entry))
            except PydanticValidationError:
                logger.warning("Skipping malformed stored notification for %s", viewer.key)
        return items

    async def clear_stored(self, viewer: Viewer, ids: Iterable[str]) -> None:
        remove = {str(i) for i in ids}
        if not remove:
            return
        current = await self.stored(viewer)
        kept = [n for n in current if n.id not in remove]
        if len(kept) != len(current):
            await self.kv.set_json(state_key(viewer.key, "items"), [n.to_json() for n in kept])

    def system_notices(self, viewer: Viewer, appointments: list[Appointment], today: date | None = None) -> list[Notification]:
        """Derived status lines; never persisted."""
        now = self._clock()
        if viewer.is_admin:
            failed = [a for a in appointments if a.sync_error]
            pending = [a for a in appointments if a.pending_sync is True]
            notices = []
            if failed:
                notices.append(("sync-errors", NotificationType.error, "Sync issues",
                                f"{len(failed)} appointment(s) failed to sync."))
            if pending:
                notices.append(("sync-pending", NotificationType.info, "Pending sync",
                                f"{len(pending)} appointment(s) pending sync."))
            if not failed and not pending:
                notices.append(("system-ok", NotificationType.success, "System", "No sync issues detected."))
        else:
            day = today or now.astimezone(self.fmt.tz).date()
            todays = sorted(
                (a for a in appointments if a.start.astimezone(self.fmt.tz).date() == day),
                key=lambda a: a.start,
            )
            if todays:
                notices = [("daily-summary", NotificationType.info, "Today",
                            f"You have {len(todays)} appointment(s). First at {self.fmt.hm(todays[0].start)}.")]
            else:
                notices = [("daily-empty", NotificationType.success, "Today", "No appointments today.")]
        return [Notification(id=i, type=t, title=title, message=msg, created_at=now) for i, t, title, msg in notices]

    async def feed(
        self,
        viewer: Viewer,
        appointments: list[Appointment],
        today: date | None = None,
        remote: Iterable[Notification] = (),
    ) -> list[Notification]:
        """What the viewer's bell shows, minus dismissed ids.

        Order: ``remote`` (notifications read back from the practitioner's FHIR record),
        stored items, then system notices. Admins only get system notices.
        """
        stored = [] if viewer.is_admin else [*remote, *await self.stored(viewer)]
        dismissed = set(await self.dismissed_ids(viewer))
        merged = _unique_by_id([*stored, *self.system_notices(viewer, appointments, today)])
        return [n for n in merged if n.id not in dismissed]

    def subscribe(self, listener: Listener, viewer: Viewer | None = None) -> Callable[[], None]:
        """Listen for writes to notification state (all viewers, or one)."""
        if viewer is None:
            return self.kv.subscribe(listener, prefix=NOTIFS_PREFIX)

        suffix = f"_{viewer.key}"

        def _filtered(key: str):
            if key.endswith(suffix):
                return listener(key)
            return None

        return self.kv.subscribe(_filtered, prefix=NOTIFS_PREFIX)

    async def _load_snapshot(self, viewer_key: str) -> dict[str, SnapshotRecord]:
        raw = await self.kv.get_json(state_key(viewer_key, "snapshot"), {})
        out: dict[str, SnapshotRecord] = {}
        for rid, entry in raw.items():
            record = SnapshotRecord.from_any(entry)
            if record is not None:
                out[str(rid)] = record
        return out


def _unique_by_id(items: Iterable[Notification]) -> list[Notification]:
    seen: set[str] = set()
    out: list[Notification] = []
    for n in items:
        if not n.id or n.id in seen:
            continue
        seen.add(n.id)
        out.append(n)
    return out
