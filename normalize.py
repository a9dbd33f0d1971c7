import re
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models import Candidate

logger = logging.getLogger(__name__)

_NON_DIGIT = re.compile(r"\D+")
BATCH_SIZE = 500
BATCH_RETRIES = 3


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    digits = _NON_DIGIT.sub("", str(raw))
    if len(digits) < 10:
        return None
    return digits[-10:]


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    return str(raw).strip().lower() or None


def normalize_name(raw: Optional[str]) -> Optional[str]:
    # casing is kept for display
    if raw is None:
        return None
    return str(raw).strip() or None


def _field(record: Any, name: str):
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def normalize(record: Any) -> Dict[str, Optional[str]]:
    return {
        "phone": normalize_phone(_field(record, "phone")),
        "email": normalize_email(_field(record, "email")),
        "name": normalize_name(_field(record, "name")),
    }


@dataclass
class NormalizationChange:
    id: str
    before: Dict[str, Optional[str]]
    after: Dict[str, Optional[str]]


@dataclass
class DuplicateGroup:
    kind: str  # "email" or "name_phone"
    role_id: str
    values: Tuple[str, ...]
    members: List[Candidate] = field(default_factory=list)

    @property
    def key(self) -> str:
        return ":".join((self.kind, self.role_id) + self.values)


@dataclass
class MergePlan:
    group_key: str
    keeper_id: str
    loser_ids: List[str]


def plan_change(candidate: Candidate) -> Optional[NormalizationChange]:
    # undefined normalized values (short phones, blanks) never erase what is stored
    after = normalize(candidate)
    before = {k: _field(candidate, k) for k in after}
    updates = {k: v for k, v in after.items() if v is not None and v != before[k]}
    if not updates:
        return None
    return NormalizationChange(id=candidate.id, before=before, after={**before, **updates})


def iter_candidates(engine, batch_size: int = BATCH_SIZE) -> Iterable[Candidate]:
    offset = 0
    while True:
        with Session(engine) as session:
            rows = session.exec(
                select(Candidate)
                .order_by(Candidate.created_at, Candidate.id)
                .offset(offset)
                .limit(batch_size)
            ).all()
        if not rows:
            return
        yield from rows
        offset += len(rows)
        if len(rows) < batch_size:
            return


def plan_normalization(engine, batch_size: int = BATCH_SIZE) -> List[NormalizationChange]:
    changes = []
    scanned = 0
    for candidate in iter_candidates(engine, batch_size):
        scanned += 1
        change = plan_change(candidate)
        if change:
            changes.append(change)
    logger.info("scanned %d candidates; %d need normalize updates", scanned, len(changes))
    return changes


def _write_batch(engine, batch: List[NormalizationChange]) -> None:
    with Session(engine) as session:
        for change in batch:
            candidate = session.get(Candidate, change.id)
            if candidate is None:
                continue
            candidate.phone = change.after["phone"]
            candidate.email = change.after["email"]
            candidate.name = change.after["name"]
            session.add(candidate)
        session.commit()


def apply_normalization(engine, changes: List[NormalizationChange],
                        batch_size: int = BATCH_SIZE, retries: int = BATCH_RETRIES) -> Dict[str, List[str]]:
    """A batch hitting the (role, email) index is replayed row by row; conflicting rows are reported, not written."""
    applied: List[str] = []
    conflicts: List[str] = []
    for start in range(0, len(changes), batch_size):
        batch = changes[start:start + batch_size]
        for attempt in range(1, retries + 1):
            try:
                _write_batch(engine, batch)
                applied.extend(c.id for c in batch)
                break
            except IntegrityError:
                logger.warning("batch at offset %d hit a uniqueness conflict; applying row by row", start)
                for change in batch:
                    try:
                        _write_batch(engine, [change])
                        applied.append(change.id)
                    except IntegrityError:
                        conflicts.append(change.id)
                break
            except Exception:
                if attempt == retries:
                    raise
                logger.warning("batch at offset %d failed (attempt %d/%d); retrying", start, attempt, retries)
    logger.info("normalize applied to %d candidates, %d conflicts", len(applied), len(conflicts))
    return {"applied": applied, "conflicts": conflicts}


def find_duplicates(candidates: Iterable[Candidate]) -> List[DuplicateGroup]:
    """Group live candidates by (role, email) and by (role, name, phone)."""
    by_email: Dict[Tuple[str, ...], DuplicateGroup] = {}
    by_name_phone: Dict[Tuple[str, ...], DuplicateGroup] = {}

    for c in candidates:
        if c.duplicate_of:
            continue
        norm = normalize(c)
        if norm["email"]:
            key = (c.role_id, norm["email"])
            group = by_email.setdefault(key, DuplicateGroup("email", c.role_id, (norm["email"],)))
            group.members.append(c)
        if norm["name"] and norm["phone"]:
            key = (c.role_id, norm["name"], norm["phone"])
            group = by_name_phone.setdefault(
                key, DuplicateGroup("name_phone", c.role_id, (norm["name"], norm["phone"]))
            )
            group.members.append(c)

    groups = [g for g in list(by_email.values()) + list(by_name_phone.values()) if len(g.members) > 1]
    for g in groups:
        g.members.sort(key=lambda c: (c.created_at, c.id))
    return groups


def plan_merge(group: DuplicateGroup) -> MergePlan:
    keeper, *losers = sorted(group.members, key=lambda c: (c.created_at, c.id))
    return MergePlan(group_key=group.key, keeper_id=keeper.id, loser_ids=[c.id for c in losers])


def confirm_merges(engine, plans: List[MergePlan], confirmed_keys: Iterable[str]) -> List[MergePlan]:
    # only sets duplicate_of on the losers of confirmed groups
    confirmed = set(confirmed_keys)
    done = []
    for plan in plans:
        if plan.group_key not in confirmed:
            continue
        with Session(engine) as session:
            for loser_id in plan.loser_ids:
                loser = session.get(Candidate, loser_id)
                if loser is None or loser.duplicate_of:
                    continue
                loser.duplicate_of = plan.keeper_id
                session.add(loser)
            session.commit()
        logger.info("merged group %s into keeper %s (%d losers)", plan.group_key, plan.keeper_id, len(plan.loser_ids))
        done.append(plan)
    return done
