import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

AGENDA_MAX_ITEMS = 20
MEMORY_MAX_NOTES = 50
MEMORY_TOPIC_PATTERN = re.compile(
    r"\b(sömn|oro|ångest|panik|motivation|relation|arbete|studier"
    r"|sleep|worry|anxiety|panic|relationship|work|studies)\b"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AgendaItem:
    id: str
    text: str
    ts: str


@dataclass(frozen=True)
class MemoryNote:
    ts: str
    lang: str
    topics: list[str]
    summary: str


def _plan_items(plan: Any) -> list[str]:
    if isinstance(plan, dict):
        items = plan.get("bullets") or plan.get("steps") or []
        return [str(item).strip() for item in items if str(item or "").strip()]
    if isinstance(plan, list):
        titles = []
        for item in plan:
            if isinstance(item, dict) and item.get("title"):
                minutes = item.get("minutes")
                titles.append(f"{item['title']} ({minutes} min)" if minutes else str(item["title"]))
        return titles
    return []


def _plan_summary(plan: Any, items: list[str]) -> Optional[str]:
    if items:
        return items[0]
    if isinstance(plan, dict):
        summary = str(plan.get("question") or plan.get("title") or "").strip()
        return summary or None
    return None


@dataclass
class CoachUIState:
    """What the chat screen renders: one growing reply, the current plan, agenda and memory."""

    lang: str = "sv"
    assistant_text: str = ""
    is_final: bool = False
    streaming: bool = False
    current_plan: Any = None
    agenda: list[AgendaItem] = field(default_factory=list)
    memory: list[MemoryNote] = field(default_factory=list)

    def begin_reply(self) -> None:
        self.assistant_text = ""
        self.is_final = False
        self.streaming = True

    def append_chunk(self, delta: str) -> None:
        self.assistant_text += delta

    def finish_reply(self, is_final: bool) -> None:
        self.is_final = is_final
        self.streaming = False

    def add_agenda(self, items: list[str]) -> list[AgendaItem]:
        ts = _now_iso()
        for text in items:
            if text:
                self.agenda.insert(0, AgendaItem(id=uuid4().hex, text=text, ts=ts))
        del self.agenda[AGENDA_MAX_ITEMS:]
        return self.agenda

    def add_memory(self, summary: str, lang: Optional[str] = None) -> MemoryNote:
        note = MemoryNote(
            ts=_now_iso(),
            lang=lang or self.lang,
            topics=MEMORY_TOPIC_PATTERN.findall(summary.lower()),
            summary=summary,
        )
        self.memory.insert(0, note)
        del self.memory[MEMORY_MAX_NOTES:]
        return note

    def route_plan(self, plan: Any) -> None:
        self.current_plan = plan
        items = _plan_items(plan)
        if items:
            self.add_agenda(items)
        summary = _plan_summary(plan, items)
        if summary:
            self.add_memory(summary)
