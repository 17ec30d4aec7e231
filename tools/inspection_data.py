from __future__ import annotations

import copy
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from models.schemas import TaskCondition, WorkOrderStatus

logger = logging.getLogger(__name__)

ITEM_PENDING = "PENDING"
ITEM_COMPLETED = "COMPLETED"
TASK_PENDING = "PENDING"
TASK_COMPLETED = "COMPLETED"

_TIME_RE = re.compile(r"(\d{1,2}):?(\d{0,2})\s*(am|pm)?", re.IGNORECASE)


class InspectionDataError(RuntimeError):
    pass


@dataclass
class Inspector:
    id: str
    name: str
    mobile_phone: str


@dataclass
class WorkOrder:
    id: str
    job_number: str
    inspector_ids: List[str]
    customer_name: str
    property_address: str
    postal_code: str
    scheduled_start: datetime
    scheduled_end: datetime
    status: WorkOrderStatus = WorkOrderStatus.SCHEDULED
    priority: str = "Normal"
    inspection_type: str = "Routine Inspection"
    notes: str = ""
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None


@dataclass
class ChecklistItem:
    id: str
    work_order_id: str
    name: str
    order: int
    status: str = ITEM_PENDING
    condition: Optional[TaskCondition] = None
    remarks: str = ""
    entered_on: Optional[datetime] = None
    entered_by: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)


@dataclass
class SubLocation:
    id: str
    item_id: str
    name: str
    order: int
    status: str = "pending"


@dataclass
class ChecklistTask:
    id: str
    item_id: str
    name: str
    order: int
    location_id: Optional[str] = None
    status: str = TASK_PENDING
    condition: Optional[TaskCondition] = None
    notes: str = ""
    updated_on: Optional[datetime] = None


@dataclass
class EntryMedia:
    url: str
    media_type: str
    caption: Optional[str] = None


@dataclass
class ItemEntry:
    id: str
    item_id: str
    inspector_id: Optional[str]
    task_id: Optional[str] = None
    condition: Optional[TaskCondition] = None
    cause: Optional[str] = None
    resolution: Optional[str] = None
    remarks: Optional[str] = None
    media: List[EntryMedia] = field(default_factory=list)
    created_on: datetime = field(default_factory=datetime.utcnow)

    def photos(self) -> List[EntryMedia]:
        return [m for m in self.media if m.media_type == "photo"]

    def videos(self) -> List[EntryMedia]:
        return [m for m in self.media if m.media_type == "video"]


def phone_variants(phone: str) -> List[str]:
    raw = re.sub(r"[\s\-()]", "", str(phone or ""))
    if not raw:
        return []
    bare = raw.lstrip("+")
    return [f"+{bare}", bare]


class InspectionDataClient:
    """In-process store for inspectors, work orders and checklists.

    Reads of today's jobs and job locations go through a small read-through
    cache that every write touching the job invalidates.
    """

    def __init__(self, seed: bool = True, today: date | None = None) -> None:
        self.inspectors: Dict[str, Inspector] = {}
        self.work_orders: Dict[str, WorkOrder] = {}
        self.items: Dict[str, ChecklistItem] = {}
        self.sub_locations: Dict[str, SubLocation] = {}
        self.tasks: Dict[str, ChecklistTask] = {}
        self.entries: Dict[str, ItemEntry] = {}
        self._jobs_cache: Dict[Tuple[str, str], List[dict]] = {}
        self._locations_cache: Dict[str, List[dict]] = {}
        if seed:
            seed_demo_data(self, today or date.today())

    # -- cache -----------------------------------------------------------

    def invalidate(self, work_order_id: str | None = None) -> None:
        self._jobs_cache.clear()
        if work_order_id:
            self._locations_cache.pop(work_order_id, None)
        else:
            self._locations_cache.clear()

    # -- inspectors ------------------------------------------------------

    async def get_inspector_by_phone(self, phone: str) -> Optional[dict]:
        variants = set(phone_variants(phone))
        if not variants:
            return None
        for inspector in self.inspectors.values():
            if variants & set(phone_variants(inspector.mobile_phone)):
                return _inspector_dict(inspector)
        return None

    async def get_inspector_by_name(self, name: str) -> Optional[dict]:
        wanted = str(name or "").strip().lower()
        if not wanted:
            return None
        matches = [i for i in self.inspectors.values() if i.name.strip().lower() == wanted]
        if len(matches) != 1:
            return None
        return _inspector_dict(matches[0])

    async def get_inspector(self, inspector_id: str) -> Optional[dict]:
        inspector = self.inspectors.get(inspector_id)
        return _inspector_dict(inspector) if inspector else None

    async def list_inspectors(self) -> List[dict]:
        return [_inspector_dict(i) for i in self.inspectors.values()]

    # -- work orders -----------------------------------------------------

    async def get_today_jobs_for_inspector(self, inspector_id: str, on: date | None = None) -> List[dict]:
        day = on or date.today()
        cache_key = (inspector_id, day.isoformat())
        cached = self._jobs_cache.get(cache_key)
        if cached is not None:
            return copy.deepcopy(cached)
        start = datetime.combine(day, time.min)
        end = datetime.combine(day, time.max)
        orders = [
            wo
            for wo in self.work_orders.values()
            if inspector_id in wo.inspector_ids and start <= wo.scheduled_start <= end
        ]
        orders.sort(key=lambda wo: (wo.scheduled_start, wo.job_number))
        jobs = [
            {
                "id": wo.id,
                "job_number": wo.job_number,
                "property_address": wo.property_address,
                "postal_code": wo.postal_code,
                "customer_name": wo.customer_name,
                "scheduled_date": wo.scheduled_start.isoformat(),
                "status": wo.status.value,
                "priority": wo.priority,
                "notes": wo.notes,
            }
            for wo in orders
        ]
        self._jobs_cache[cache_key] = jobs
        return copy.deepcopy(jobs)

    async def get_work_order_by_id(self, work_order_id: str) -> Optional[dict]:
        wo = self.work_orders.get(str(work_order_id or ""))
        if not wo:
            return None
        return {
            "id": wo.id,
            "job_number": wo.job_number,
            "property_address": wo.property_address,
            "postal_code": wo.postal_code,
            "customer_name": wo.customer_name,
            "scheduled_start": wo.scheduled_start.isoformat(),
            "scheduled_end": wo.scheduled_end.isoformat(),
            "status": wo.status.value,
            "priority": wo.priority,
            "inspection_type": wo.inspection_type,
            "inspector_ids": list(wo.inspector_ids),
        }

    async def update_work_order_status(self, work_order_id: str, status: str) -> Optional[dict]:
        wo = self.work_orders.get(work_order_id)
        if not wo:
            return None
        mapping = {
            "in_progress": WorkOrderStatus.STARTED,
            "completed": WorkOrderStatus.COMPLETED,
            "cancelled": WorkOrderStatus.CANCELLED,
        }
        if status not in mapping:
            raise InspectionDataError(f"unsupported_work_order_status:{status}")
        wo.status = mapping[status]
        if status == "in_progress" and not wo.actual_start:
            wo.actual_start = datetime.utcnow()
        if status == "completed":
            wo.actual_end = datetime.utcnow()
        self.invalidate(work_order_id)
        return {"id": wo.id, "status": wo.status.value}

    async def update_work_order_details(self, work_order_id: str, field_name: str, value: str) -> bool:
        wo = self.work_orders.get(str(work_order_id or ""))
        if not wo:
            return False
        value = str(value or "").strip()
        if not value:
            return False
        if field_name == "customer":
            wo.customer_name = value
        elif field_name == "address":
            street, _, postal = value.partition(",")
            wo.property_address = street.strip()
            if postal.strip():
                wo.postal_code = postal.strip()
        elif field_name == "time":
            match = _TIME_RE.search(value)
            if not match:
                return False
            hours = int(match.group(1))
            minutes = int(match.group(2) or 0)
            meridiem = (match.group(3) or "").lower()
            if meridiem == "pm" and hours < 12:
                hours += 12
            if meridiem == "am" and hours == 12:
                hours = 0
            if hours > 23 or minutes > 59:
                return False
            start = wo.scheduled_start.replace(hour=hours, minute=minutes, second=0, microsecond=0)
            wo.scheduled_start = start
            wo.scheduled_end = start + timedelta(hours=2)
        elif field_name == "status":
            try:
                wo.status = WorkOrderStatus(value.upper())
            except ValueError:
                return False
        else:
            return False
        self.invalidate(wo.id)
        return True

    async def get_work_order_progress(self, work_order_id: str) -> dict:
        total = completed = in_progress = 0
        for item in self._items_for(work_order_id):
            for task in self._tasks_for_item(item.id):
                total += 1
                if task.status == TASK_COMPLETED:
                    completed += 1
                elif any(e.task_id == task.id for e in self.entries.values()):
                    in_progress += 1
        return {
            "total_tasks": total,
            "completed_tasks": completed,
            "pending_tasks": total - completed - in_progress,
            "in_progress_tasks": in_progress,
        }

    # -- checklist -------------------------------------------------------

    def _items_for(self, work_order_id: str) -> List[ChecklistItem]:
        rows = [i for i in self.items.values() if i.work_order_id == work_order_id]
        return sorted(rows, key=lambda i: i.order)

    def _tasks_for_item(self, item_id: str, sub_location_id: str | None = None) -> List[ChecklistTask]:
        rows = [t for t in self.tasks.values() if t.item_id == item_id]
        if sub_location_id:
            rows = [t for t in rows if t.location_id == sub_location_id]
        return sorted(rows, key=lambda t: t.order)

    def _subs_for_item(self, item_id: str) -> List[SubLocation]:
        rows = [s for s in self.sub_locations.values() if s.item_id == item_id]
        return sorted(rows, key=lambda s: s.order)

    async def get_locations_with_completion_status(self, work_order_id: str) -> List[dict]:
        cached = self._locations_cache.get(work_order_id)
        if cached is not None:
            return copy.deepcopy(cached)
        rows: List[dict] = []
        for item in self._items_for(work_order_id):
            tasks = self._tasks_for_item(item.id)
            done = sum(1 for t in tasks if t.status == TASK_COMPLETED)
            is_completed = item.status == ITEM_COMPLETED
            rows.append(
                {
                    "name": item.name,
                    "displayName": f"{item.name} (Done)" if is_completed else item.name,
                    "contractChecklistItemId": item.id,
                    "isCompleted": is_completed,
                    "totalTasks": len(tasks),
                    "completedTasks": done,
                    "subLocations": [{"id": s.id, "name": s.name, "status": s.status} for s in self._subs_for_item(item.id)],
                }
            )
        self._locations_cache[work_order_id] = rows
        return copy.deepcopy(rows)

    async def get_checklist_locations_for_item(self, item_id: str) -> List[dict]:
        rows: List[dict] = []
        for sub in self._subs_for_item(item_id):
            tasks = self._tasks_for_item(item_id, sub.id)
            rows.append(
                {
                    "id": sub.id,
                    "name": sub.name,
                    "status": sub.status,
                    "totalTasks": len(tasks),
                    "completedTasks": sum(1 for t in tasks if t.status == TASK_COMPLETED),
                }
            )
        return rows

    async def get_contract_checklist_item_id_by_location(self, work_order_id: str, location_name: str) -> Optional[str]:
        wanted = str(location_name or "").strip().lower()
        for item in self._items_for(work_order_id):
            if item.name.strip().lower() == wanted:
                return item.id
        return None

    async def get_checklist_item(self, item_id: str) -> Optional[dict]:
        item = self.items.get(str(item_id or ""))
        if not item:
            return None
        return {
            "id": item.id,
            "workOrderId": item.work_order_id,
            "name": item.name,
            "status": item.status,
            "condition": item.condition.value if item.condition else None,
            "remarks": item.remarks,
        }

    async def get_tasks_by_location(
        self,
        work_order_id: str,
        location_name: str,
        item_id: str | None = None,
        sub_location_id: str | None = None,
    ) -> List[dict]:
        item = self.items.get(item_id or "") if item_id else None
        if item is None:
            resolved = await self.get_contract_checklist_item_id_by_location(work_order_id, location_name)
            item = self.items.get(resolved or "")
        if item is None or item.work_order_id != work_order_id:
            return []
        subs = {s.id: s.name for s in self._subs_for_item(item.id)}
        return [
            {
                "id": t.id,
                "action": t.name,
                "status": "completed" if t.status == TASK_COMPLETED else "pending",
                "notes": t.notes,
                "itemId": t.item_id,
                "locationId": t.location_id,
                "locationName": subs.get(t.location_id or "", item.name),
            }
            for t in self._tasks_for_item(item.id, sub_location_id)
        ]

    async def get_task(self, task_id: str) -> Optional[dict]:
        task = self.tasks.get(str(task_id or ""))
        if not task:
            return None
        return {
            "id": task.id,
            "name": task.name,
            "itemId": task.item_id,
            "locationId": task.location_id,
            "status": task.status,
            "condition": task.condition.value if task.condition else None,
        }

    async def update_task_condition(self, task_id: str, condition: TaskCondition) -> None:
        task = self.tasks.get(task_id)
        if not task:
            raise InspectionDataError("task_not_found")
        task.condition = condition
        task.updated_on = datetime.utcnow()

    async def update_task_status(self, task_id: str, status: str) -> str:
        """Set a task status and recompute its location aggregate.

        Returns the owning location's new status.
        """
        task = self.tasks.get(task_id)
        if not task:
            raise InspectionDataError("task_not_found")
        task.status = TASK_COMPLETED if status == "completed" else TASK_PENDING
        task.updated_on = datetime.utcnow()
        return await self.refresh_item_status(task.item_id)

    async def add_task(self, item_id: str, name: str, location_id: str | None = None) -> dict:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        order = len(self._tasks_for_item(item_id)) + 1
        task = ChecklistTask(id=f"task-{uuid.uuid4().hex[:8]}", item_id=item_id, name=name, order=order, location_id=location_id)
        self.tasks[task.id] = task
        await self.refresh_item_status(item_id)
        return await self.get_task(task.id) or {}

    async def count_incomplete_tasks(self, item_id: str, sub_location_id: str | None = None) -> int:
        return sum(1 for t in self._tasks_for_item(item_id, sub_location_id) if t.status != TASK_COMPLETED)

    async def get_sub_location(self, sub_location_id: str) -> Optional[dict]:
        sub = self.sub_locations.get(str(sub_location_id or ""))
        if not sub:
            return None
        return {"id": sub.id, "itemId": sub.item_id, "name": sub.name, "status": sub.status}

    async def mark_sub_location_complete(self, sub_location_id: str) -> str:
        """Mark a sub-location complete and return its location's new status."""
        sub = self.sub_locations.get(sub_location_id)
        if not sub:
            raise InspectionDataError("sub_location_not_found")
        status = await self.refresh_item_status(sub.item_id)
        sub.status = "completed"
        return status

    async def refresh_item_status(self, item_id: str) -> str:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        for sub in self._subs_for_item(item_id):
            sub_tasks = self._tasks_for_item(item_id, sub.id)
            done = sum(1 for t in sub_tasks if t.status == TASK_COMPLETED)
            if sub_tasks and done == len(sub_tasks):
                sub.status = "completed"
            elif done:
                sub.status = "in_progress"
            else:
                sub.status = "pending"
        tasks = self._tasks_for_item(item_id)
        remaining = sum(1 for t in tasks if t.status != TASK_COMPLETED)
        if tasks and remaining == 0:
            item.status = ITEM_COMPLETED
            item.entered_on = item.entered_on or datetime.utcnow()
        else:
            item.status = ITEM_PENDING
            item.entered_on = None
        self.invalidate(item.work_order_id)
        return item.status

    async def mark_item_complete(self, item_id: str, inspector_id: str | None = None) -> dict:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        item.status = ITEM_COMPLETED
        item.entered_on = datetime.utcnow()
        item.entered_by = inspector_id
        self.invalidate(item.work_order_id)
        return {"id": item.id, "status": item.status}

    async def complete_all_tasks_for_location(self, work_order_id: str, location_name: str, inspector_id: str | None = None) -> bool:
        item_id = await self.get_contract_checklist_item_id_by_location(work_order_id, location_name)
        if not item_id:
            return False
        for task in self._tasks_for_item(item_id):
            task.status = TASK_COMPLETED
            task.updated_on = datetime.utcnow()
        await self.refresh_item_status(item_id)
        self.items[item_id].entered_by = inspector_id
        return True

    async def set_item_condition(self, item_id: str, condition: TaskCondition) -> None:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        item.condition = condition

    async def set_item_remarks(self, item_id: str, remarks: str) -> None:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        item.remarks = remarks

    # -- entries and media ----------------------------------------------

    async def get_entry(self, entry_id: str) -> Optional[ItemEntry]:
        entry = self.entries.get(str(entry_id or ""))
        return copy.deepcopy(entry) if entry else None

    async def find_entry(self, task_id: str, inspector_id: str | None) -> Optional[ItemEntry]:
        rows = [e for e in self.entries.values() if e.task_id == task_id and e.inspector_id == inspector_id]
        rows.sort(key=lambda e: e.created_on, reverse=True)
        return copy.deepcopy(rows[0]) if rows else None

    async def find_orphan_entry(self, item_id: str, inspector_id: str | None) -> Optional[ItemEntry]:
        rows = [
            e
            for e in self.entries.values()
            if e.item_id == item_id and e.inspector_id == inspector_id and e.task_id is None
        ]
        rows.sort(key=lambda e: e.created_on, reverse=True)
        return copy.deepcopy(rows[0]) if rows else None

    async def create_entry(
        self,
        item_id: str,
        inspector_id: str | None,
        task_id: str | None = None,
        condition: TaskCondition | None = None,
        remarks: str | None = None,
    ) -> ItemEntry:
        if item_id not in self.items:
            raise InspectionDataError("checklist_item_not_found")
        entry = ItemEntry(
            id=f"entry-{uuid.uuid4().hex[:10]}",
            item_id=item_id,
            inspector_id=inspector_id,
            task_id=task_id,
            condition=condition,
            remarks=remarks,
        )
        self.entries[entry.id] = entry
        return copy.deepcopy(entry)

    async def update_entry(self, entry_id: str, **changes: object) -> ItemEntry:
        entry = self.entries.get(entry_id)
        if not entry:
            raise InspectionDataError("entry_not_found")
        for name, value in changes.items():
            if not hasattr(entry, name) or name in {"id", "media"}:
                raise InspectionDataError(f"entry_field_not_updatable:{name}")
            setattr(entry, name, value)
        return copy.deepcopy(entry)

    async def add_entry_media(self, entry_id: str, url: str, media_type: str, caption: str | None = None) -> ItemEntry:
        entry = self.entries.get(entry_id)
        if not entry:
            raise InspectionDataError("entry_not_found")
        entry.media.append(EntryMedia(url=url, media_type=media_type, caption=caption or None))
        return copy.deepcopy(entry)

    async def add_item_media(self, item_id: str, url: str, media_type: str) -> None:
        item = self.items.get(item_id)
        if not item:
            raise InspectionDataError("checklist_item_not_found")
        (item.videos if media_type == "video" else item.photos).append(url)

    async def get_task_media(self, task_id: str) -> Optional[dict]:
        task = self.tasks.get(str(task_id or ""))
        if task:
            entries = [e for e in self.entries.values() if e.task_id == task.id]
            remarks = "; ".join(e.remarks for e in entries if e.remarks)
            photos = [m.url for e in entries for m in e.photos()]
            videos = [m.url for e in entries for m in e.videos()]
            return _media_payload(task.name, remarks, photos, videos)
        item = self.items.get(str(task_id or ""))
        if item:
            return await self.get_location_media(item.id)
        return None

    async def get_location_media(self, item_id: str) -> Optional[dict]:
        item = self.items.get(str(item_id or ""))
        if not item:
            return None
        entries = [e for e in self.entries.values() if e.item_id == item.id]
        photos = list(item.photos) + [m.url for e in entries for m in e.photos()]
        videos = list(item.videos) + [m.url for e in entries for m in e.videos()]
        return _media_payload(item.name, item.remarks, photos, videos)

    async def delete_task_media(self, task_id: str, url: str, media_type: str) -> bool:
        removed = False
        for entry in self.entries.values():
            if entry.task_id != task_id and entry.item_id != task_id:
                continue
            kept = [m for m in entry.media if not (m.url == url and m.media_type == media_type)]
            if len(kept) != len(entry.media):
                entry.media = kept
                removed = True
        item = self.items.get(task_id)
        if item:
            bucket = item.videos if media_type == "video" else item.photos
            if url in bucket:
                bucket.remove(url)
                removed = True
        return removed


def _inspector_dict(inspector: Inspector) -> dict:
    return {"id": inspector.id, "name": inspector.name, "mobilePhone": inspector.mobile_phone}


def _media_payload(name: str, remarks: str, photos: List[str], videos: List[str]) -> dict:
    return {
        "name": name,
        "remarks": remarks,
        "photos": photos,
        "videos": videos,
        "photoCount": len(photos),
        "videoCount": len(videos),
    }


def seed_demo_data(client: InspectionDataClient, today: date) -> None:
    def at(hour: int, minute: int = 0) -> datetime:
        return datetime.combine(today, time(hour, minute))

    client.inspectors = {
        "insp-1": Inspector("insp-1", "Ken Tan", "+6591234567"),
        "insp-2": Inspector("insp-2", "Mei Ling", "+6598765432"),
    }
    client.work_orders = {
        "wo-1001": WorkOrder(
            id="wo-1001",
            job_number="WO-1001",
            inspector_ids=["insp-1"],
            customer_name="Alice Lim",
            property_address="Blk 123 Tampines Street 11, 521123",
            postal_code="521123",
            scheduled_start=at(9),
            scheduled_end=at(11),
            priority="High",
        ),
        "wo-1002": WorkOrder(
            id="wo-1002",
            job_number="WO-1002",
            inspector_ids=["insp-1"],
            customer_name="Bob Tan",
            property_address="88 Jurong West Avenue 1, 640088",
            postal_code="640088",
            scheduled_start=at(14),
            scheduled_end=at(16),
        ),
        "wo-2001": WorkOrder(
            id="wo-2001",
            job_number="WO-2001",
            inspector_ids=["insp-2"],
            customer_name="Chen Wei",
            property_address="5 Marine Parade Road, 449281",
            postal_code="449281",
            scheduled_start=at(10),
            scheduled_end=at(12),
        ),
    }
    layout = {
        "wo-1001": [
            ("Living Room", {None: ["Check walls", "Check ceiling", "Check flooring"]}),
            ("Kitchen", {None: ["Check cabinets", "Check sink"]}),
            ("Bedroom 1", {"Wardrobe": ["Check doors", "Check hinges"], "Window": ["Check glass"]}),
        ],
        "wo-1002": [
            ("Bathroom", {None: ["Check tiles", "Check shower"]}),
        ],
        "wo-2001": [
            ("Balcony", {None: ["Check railing"]}),
        ],
    }
    for wo_id, items in layout.items():
        for item_order, (item_name, groups) in enumerate(items, start=1):
            item_id = f"{wo_id}-item-{item_order}"
            client.items[item_id] = ChecklistItem(id=item_id, work_order_id=wo_id, name=item_name, order=item_order)
            task_order = 0
            for sub_order, (sub_name, task_names) in enumerate(groups.items(), start=1):
                sub_id = None
                if sub_name:
                    sub_id = f"{item_id}-loc-{sub_order}"
                    client.sub_locations[sub_id] = SubLocation(id=sub_id, item_id=item_id, name=sub_name, order=sub_order)
                for task_name in task_names:
                    task_order += 1
                    task_id = f"{item_id}-task-{task_order}"
                    client.tasks[task_id] = ChecklistTask(
                        id=task_id, item_id=item_id, name=task_name, order=task_order, location_id=sub_id
                    )
