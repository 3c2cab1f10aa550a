"""Coaching tools the model may call once per reply.

Each tool is a pydantic argument model plus a pure executor. The registry renders
the argument models as JSON schemas for the provider and validates model-issued
arguments against them before running anything.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, ValidationError


class ToolFailure(RuntimeError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class UnknownTool(ToolFailure):
    pass


class InvalidArguments(ToolFailure):
    pass


@dataclass(frozen=True)
class ToolContext:
    lang: str = "en"
    user_text: str = ""


@dataclass(frozen=True)
class ToolSchema:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class RegisteredTool:
    name: str
    description: str
    args_model: type[BaseModel]
    executor: Callable[[Any, ToolContext], Any]
    schema: dict[str, Any] = field(init=False)

    def __post_init__(self) -> None:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        self.schema = schema


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        description: str,
        args_model: type[BaseModel],
        executor: Callable[[Any, ToolContext], Any],
    ) -> None:
        if name in self._tools:
            raise ValueError(f"Tool '{name}' already registered")
        self._tools[name] = RegisteredTool(name, description, args_model, executor)

    def describe(self) -> list[ToolSchema]:
        return [ToolSchema(t.name, t.description, t.schema) for t in self._tools.values()]

    def provider_tools(self) -> list[dict[str, Any]]:
        """Tool declarations in the chat-completions ``tools`` shape."""
        return [
            {
                "type": "function",
                "function": {"name": s.name, "description": s.description, "parameters": s.parameters},
            }
            for s in self.describe()
        ]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def execute(self, name: str, args_json: str, context: Optional[ToolContext] = None) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name, f"Tool '{name}' not found in registry")
        try:
            raw_args = json.loads(args_json or "{}")
        except json.JSONDecodeError as exc:
            raise InvalidArguments(name, f"Arguments are not valid JSON: {exc.msg}") from exc
        if not isinstance(raw_args, dict):
            raise InvalidArguments(name, "Arguments must be a JSON object")
        try:
            args = tool.args_model.model_validate(raw_args)
        except ValidationError as exc:
            raise InvalidArguments(name, f"Arguments failed validation: {exc.error_count()} error(s)") from exc
        try:
            return tool.executor(args, context or ToolContext())
        except ToolFailure:
            raise
        except Exception as exc:
            raise ToolFailure(name, f"Tool '{name}' failed: {str(exc)[:200]}") from exc

    def __len__(self) -> int:
        return len(self._tools)


def _lang(context: ToolContext) -> str:
    return "sv" if (context.lang or "").lower().startswith("sv") else "en"


def _focus_of(text: str) -> str:
    lowered = (text or "").lower()
    if any(token in lowered for token in ("sleep", "insomnia", "tired", "sömn", "somna", "trött")):
        return "sleep"
    if any(token in lowered for token in ("anxi", "panic", "worry", "stress", "oro", "ångest", "panik")):
        return "anxiety"
    if any(token in lowered for token in ("sad", "feeling low", "depress", "motivation", "hopeless", "nedstämd", "ledsen")):
        return "low_mood"
    return "neutral"


# build_plan

class BuildPlanArgs(BaseModel):
    goal: str = Field(min_length=2, max_length=200, description="What the user wants to change, in their words")
    days: int = Field(default=7, ge=1, le=14, description="Plan length in days")
    focus: Optional[str] = Field(default=None, max_length=40, description="sleep, anxiety, low_mood or neutral")


PLAN_STEP_POOLS: dict[str, dict[str, list[str]]] = {
    "en": {
        "sleep": [
            "Fix one wake-up time and keep it",
            "Screens off 45 minutes before bed",
            "10 minutes of morning daylight",
            "No caffeine after 14:00",
            "Write tomorrow's worries on paper before bed",
            "Wind-down routine: dim lights, same order every night",
            "Review what helped and keep the two best habits",
        ],
        "anxiety": [
            "Two 2-minute breathing breaks",
            "Plan one safe pause in your calendar",
            "Move for 10 minutes",
            "Limit news to one check today",
            "Schedule a 15-minute worry window",
            "Do one small thing you have been avoiding",
            "Review which tool calmed you most",
        ],
        "low_mood": [
            "10 minutes of morning light",
            "Contact one friend",
            "Write one line in your journal",
            "Walk outside for 15 minutes",
            "Cook one simple meal",
            "Plan one pleasant activity",
            "Review the week and pick next week's anchor",
        ],
        "neutral": [
            "Drink six glasses of water",
            "Read ten pages",
            "Call someone you care about",
            "Tidy one room",
            "Try something new for 10 minutes",
            "Take a screen-free walk",
            "Review what worked this week",
        ],
    },
    "sv": {
        "sleep": [
            "Bestäm en fast uppvakningstid och håll den",
            "Skärmar av 45 minuter före sänggåendet",
            "10 minuter dagsljus på morgonen",
            "Inget koffein efter 14:00",
            "Skriv ner morgondagens oro innan du lägger dig",
            "Nedvarvningsrutin: dämpat ljus, samma ordning varje kväll",
            "Utvärdera och behåll de två bästa vanorna",
        ],
        "anxiety": [
            "Andning 2×2 minuter",
            "Planera en trygg paus i kalendern",
            "Rör dig i 10 minuter",
            "Begränsa nyheter till en gång i dag",
            "Boka ett oro-fönster på 15 minuter",
            "Gör en liten sak du har undvikit",
            "Utvärdera vilket verktyg som lugnade mest",
        ],
        "low_mood": [
            "Morgonljus 10 minuter",
            "Kontakta en vän",
            "Skriv en rad i dagboken",
            "Gå ut i 15 minuter",
            "Laga en enkel måltid",
            "Planera en trevlig aktivitet",
            "Se tillbaka på veckan och välj nästa veckas ankare",
        ],
        "neutral": [
            "Drick sex glas vatten",
            "Läs tio sidor",
            "Ring någon du bryr dig om",
            "Städa ett rum",
            "Prova något nytt i 10 minuter",
            "Ta en skärmfri promenad",
            "Utvärdera vad som fungerade i veckan",
        ],
    },
}

PLAN_HABITS: dict[str, dict[str, list[str]]] = {
    "en": {
        "sleep": ["Same wake-up time", "Evening wind-down", "Morning daylight"],
        "anxiety": ["Two breathing breaks", "One mindful walk", "Worry window"],
        "low_mood": ["One line of journaling", "Time outdoors", "One social contact"],
        "neutral": ["Water with every meal", "A short walk", "One line of journaling"],
    },
    "sv": {
        "sleep": ["Samma uppvakningstid", "Nedvarvning på kvällen", "Morgonljus"],
        "anxiety": ["Två andningspauser", "En medveten promenad", "Oro-fönster"],
        "low_mood": ["En rad i dagboken", "Tid utomhus", "En social kontakt"],
        "neutral": ["Vatten till varje måltid", "En kort promenad", "En rad i dagboken"],
    },
}


def build_plan(args: BuildPlanArgs, context: ToolContext) -> dict[str, Any]:
    lang = _lang(context)
    focus = args.focus if args.focus in PLAN_HABITS[lang] else _focus_of(f"{args.goal} {context.user_text}")
    pool = PLAN_STEP_POOLS[lang][focus]
    day_label = "Dag" if lang == "sv" else "Day"
    steps = [f"{day_label} {day}: {pool[(day - 1) % len(pool)]}" for day in range(1, args.days + 1)]
    return {
        "title": f"Plan ({args.days} {'dagar' if lang == 'sv' else 'days'}): {args.goal.strip()}",
        "steps": steps,
        "dailyHabits": list(PLAN_HABITS[lang][focus]),
    }


# suggest_exercises

class SuggestExercisesArgs(BaseModel):
    minutes: int = Field(ge=1, le=60, description="Minutes the user has available right now")
    focus: Optional[str] = Field(default=None, max_length=40, description="sleep, anxiety, low_mood or neutral")


@dataclass(frozen=True)
class Exercise:
    id: str
    title: dict[str, str]
    instructions: dict[str, str]
    focus: tuple[str, ...]


EXERCISES: list[Exercise] = [
    Exercise(
        "breath_478",
        {"en": "4-7-8 breathing", "sv": "4-7-8-andning"},
        {
            "en": "Inhale for 4, hold for 7, exhale slowly for 8. Repeat calmly.",
            "sv": "Andas in på 4, håll i 7, andas ut långsamt på 8. Upprepa lugnt.",
        },
        ("sleep", "anxiety"),
    ),
    Exercise(
        "ground_54321",
        {"en": "5-4-3-2-1 grounding", "sv": "5-4-3-2-1-jordning"},
        {
            "en": "Name 5 things you see, 4 you hear, 3 you feel, 2 you smell, 1 you taste.",
            "sv": "Nämn 5 saker du ser, 4 du hör, 3 du känner, 2 du luktar, 1 du smakar.",
        },
        ("anxiety",),
    ),
    Exercise(
        "body_scan",
        {"en": "Body scan", "sv": "Kroppsskanning"},
        {
            "en": "Move your attention slowly from feet to head and soften each area.",
            "sv": "Flytta uppmärksamheten långsamt från fötterna till huvudet och slappna av.",
        },
        ("sleep", "low_mood"),
    ),
    Exercise(
        "walk_outside",
        {"en": "Mindful walk", "sv": "Medveten promenad"},
        {
            "en": "Walk at an easy pace and notice five details around you.",
            "sv": "Gå i lugnt tempo och lägg märke till fem detaljer omkring dig.",
        },
        ("low_mood", "neutral"),
    ),
    Exercise(
        "note_1line",
        {"en": "One-line journal", "sv": "En rad i dagboken"},
        {
            "en": "Write one sentence about how you feel and one thing you need.",
            "sv": "Skriv en mening om hur du mår och en sak du behöver.",
        },
        ("low_mood", "neutral", "anxiety"),
    ),
]


def suggest_exercises(args: SuggestExercisesArgs, context: ToolContext) -> list[dict[str, Any]]:
    lang = _lang(context)
    focus = args.focus or _focus_of(context.user_text)
    ranked = sorted(EXERCISES, key=lambda ex: 0 if focus in ex.focus else 1)
    if args.minutes < 4:
        durations = [args.minutes]
    else:
        first = (args.minutes + 1) // 2
        durations = [first, args.minutes - first]
    return [
        {
            "id": exercise.id,
            "title": exercise.title[lang],
            "minutes": minutes,
            "instructions": exercise.instructions[lang],
        }
        for exercise, minutes in zip(ranked, durations)
    ]


# journal_prompt

class JournalPromptArgs(BaseModel):
    topic: Optional[str] = Field(default=None, max_length=120, description="What the entry should reflect on")


JOURNAL_PROMPTS: dict[str, dict[str, tuple[list[str], str]]] = {
    "en": {
        "sleep": (
            ["What kept your mind busy last night?", "What helped you rest, even a little?", "What would make tonight 5% easier?"],
            "What is one thing you can let go of before bed tonight?",
        ),
        "anxiety": (
            ["What is the worry, in one sentence?", "What do you actually know for sure?", "What is within your control today?"],
            "What would you tell a friend with the same worry?",
        ),
        "low_mood": (
            ["What drained you today?", "What gave you even a small lift?", "Who could you reach out to?"],
            "What is one kind thing you can do for yourself tomorrow?",
        ),
        "neutral": (
            ["What went well today?", "What was harder than expected?", "What did you learn about yourself?"],
            "What do you want more of this week?",
        ),
    },
    "sv": {
        "sleep": (
            ["Vad höll tankarna igång i natt?", "Vad hjälpte dig att vila, om än lite?", "Vad skulle göra i kväll 5 % lättare?"],
            "Vad kan du släppa innan du lägger dig i kväll?",
        ),
        "anxiety": (
            ["Vad är oron, i en mening?", "Vad vet du säkert?", "Vad kan du påverka i dag?"],
            "Vad skulle du säga till en vän med samma oro?",
        ),
        "low_mood": (
            ["Vad tog energi i dag?", "Vad gav dig ett litet lyft?", "Vem skulle du kunna höra av dig till?"],
            "Vad är en snäll sak du kan göra för dig själv i morgon?",
        ),
        "neutral": (
            ["Vad gick bra i dag?", "Vad var svårare än väntat?", "Vad lärde du dig om dig själv?"],
            "Vad vill du ha mer av den här veckan?",
        ),
    },
}


def journal_prompt(args: JournalPromptArgs, context: ToolContext) -> dict[str, Any]:
    lang = _lang(context)
    bullets, question = JOURNAL_PROMPTS[lang][_focus_of(f"{args.topic or ''} {context.user_text}")]
    return {"bullets": list(bullets), "question": question}


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        "build_plan",
        "Build a short multi-day self-care plan with one step per day and a few daily habits.",
        BuildPlanArgs,
        build_plan,
    )
    registry.register(
        "suggest_exercises",
        "Suggest at most two time-boxed exercises that fit into the minutes the user has available.",
        SuggestExercisesArgs,
        suggest_exercises,
    )
    registry.register(
        "journal_prompt",
        "Produce a reflective journal prompt: three short bullets and one closing question.",
        JournalPromptArgs,
        journal_prompt,
    )
    return registry
