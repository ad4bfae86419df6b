"""
Polymath Brain - Curriculum Model

Dataclasses for the root -> module -> unit curriculum, the recursive
validating tree constructor used on LLM output, the static fallback plan
and the progress bookkeeping over tree node ids.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .state import ProgressStatus, slugify


MAX_TREE_DEPTH = 6
MAX_MODULES = 15
MAX_KEY_LEARNINGS = 5


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    """First present key; LLMs answer in either snake_case or camelCase"""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _as_text(value: Any, default: str = "") -> str:
    return value.strip() if isinstance(value, str) and value.strip() else default


def _as_text_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


@dataclass
class CurriculumUnit:
    """A single teachable unit"""
    id: str
    title: str
    objective: str = ""
    first_principles: List[str] = field(default_factory=list)
    checkpoints: List[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any, module_index: int, unit_index: int) -> "CurriculumUnit":
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            id=f"unit-{module_index}-{unit_index}",
            title=_as_text(raw.get("title"), f"Unit {unit_index}"),
            objective=_as_text(raw.get("objective")),
            first_principles=_as_text_list(_pick(raw, "first_principles", "firstPrinciples")),
            checkpoints=_as_text_list(raw.get("checkpoints")),
        )


@dataclass
class CurriculumModule:
    id: str
    title: str
    rationale: str = ""
    units: List[CurriculumUnit] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any, module_index: int) -> "CurriculumModule":
        raw = raw if isinstance(raw, dict) else {}
        raw_units = raw.get("units") if isinstance(raw.get("units"), list) else []
        return cls(
            id=f"module-{module_index}",
            title=_as_text(raw.get("title"), f"Module {module_index}"),
            rationale=_as_text(raw.get("rationale")),
            units=[
                CurriculumUnit.from_raw(unit, module_index, unit_index)
                for unit_index, unit in enumerate(raw_units, start=1)
            ],
        )


@dataclass
class CurriculumTreeNode:
    """Node of the curriculum tree; children are bounded in depth"""
    id: str
    title: str
    goal: str = ""
    key_learnings: List[str] = field(default_factory=list)
    children: List["CurriculumTreeNode"] = field(default_factory=list)

    @classmethod
    def from_raw(
        cls,
        raw: Any,
        path: str = "root",
        depth: int = 0,
        max_depth: int = MAX_TREE_DEPTH,
    ) -> "CurriculumTreeNode":
        """
        Recursive validating constructor for arbitrary JSON.

        Missing ids become ``node-<path>``, missing titles ``Untitled Node``,
        non-string learnings are dropped and anything below ``max_depth``
        is cut off.
        """
        raw = raw if isinstance(raw, dict) else {}
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id.strip():
            node_id = "root" if path == "root" else f"node-{path}"
        children: List[CurriculumTreeNode] = []
        raw_children = raw.get("children")
        if depth < max_depth and isinstance(raw_children, list):
            for index, child in enumerate(raw_children, start=1):
                if not isinstance(child, dict):
                    continue
                child_path = str(index) if path == "root" else f"{path}-{index}"
                children.append(cls.from_raw(child, child_path, depth + 1, max_depth))
        return cls(
            id=node_id.strip(),
            title=_as_text(raw.get("title"), "Untitled Node"),
            goal=_as_text(raw.get("goal")),
            key_learnings=_as_text_list(_pick(raw, "key_learnings", "keyLearnings")),
            children=children,
        )

    def iter_ids(self) -> Iterable[str]:
        yield self.id
        for child in self.children:
            yield from child.iter_ids()

    def depth(self) -> int:
        if not self.children:
            return 0
        return 1 + max(child.depth() for child in self.children)


@dataclass
class CurriculumPlan:
    id: str
    goal_id: str
    created_at: float
    summary: str
    story: str
    tree: CurriculumTreeNode
    modules: List[CurriculumModule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_raw(cls, raw: Any, topic: str, goal_id: str, now: float) -> Optional["CurriculumPlan"]:
        """Sanitised plan from LLM JSON, or None when no modules survive"""
        if not isinstance(raw, dict):
            return None
        raw_modules = raw.get("modules")
        if not isinstance(raw_modules, list):
            return None
        modules = [
            CurriculumModule.from_raw(module, index)
            for index, module in enumerate(raw_modules[:MAX_MODULES], start=1)
            if isinstance(module, dict)
        ]
        if not modules:
            return None

        tree = None
        if isinstance(raw.get("tree"), dict):
            tree = CurriculumTreeNode.from_raw(raw["tree"])
            if not tree_covers(tree, modules):
                tree = None
        if tree is None:
            tree = tree_from_modules(topic, modules)

        return cls(
            id=f"curriculum-{slugify(topic)}-{int(now)}",
            goal_id=goal_id,
            created_at=now,
            summary=_as_text(raw.get("summary"), f"First-principles curriculum for {topic}."),
            story=_as_text(raw.get("story")),
            tree=tree,
            modules=modules,
        )


def tree_from_modules(topic: str, modules: List[CurriculumModule]) -> CurriculumTreeNode:
    """Build the tree from the flat module list so their ids match"""
    return CurriculumTreeNode(
        id="root",
        title=topic,
        goal=f"Master {topic} from first principles.",
        key_learnings=[m.title for m in modules][:MAX_KEY_LEARNINGS],
        children=[
            CurriculumTreeNode(
                id=module.id,
                title=module.title,
                goal=module.rationale,
                key_learnings=[u.title for u in module.units][:MAX_KEY_LEARNINGS],
                children=[
                    CurriculumTreeNode(
                        id=unit.id,
                        title=unit.title,
                        goal=unit.objective,
                        key_learnings=list(unit.checkpoints),
                    )
                    for unit in module.units
                ],
            )
            for module in modules
        ],
    )


def tree_covers(tree: CurriculumTreeNode, modules: List[CurriculumModule]) -> bool:
    ids = set(tree.iter_ids())
    for module in modules:
        if module.id not in ids:
            return False
        if any(unit.id not in ids for unit in module.units):
            return False
    return True


def fallback_curriculum(topic: str, goal_id: str, now: float) -> CurriculumPlan:
    """Static three-module plan used whenever the LLM gives nothing usable"""
    modules = [
        CurriculumModule(
            id="module-1",
            title="Foundations",
            rationale="Define the primitives and why they matter.",
            units=[
                CurriculumUnit(
                    id="unit-1-1",
                    title="Core primitives",
                    objective=f"Identify the irreducible concepts in {topic}.",
                    first_principles=[
                        "Define the smallest units that cannot be removed.",
                        "Explain why each unit is necessary.",
                    ],
                    checkpoints=["Explain the primitives in your own words."],
                )
            ],
        ),
        CurriculumModule(
            id="module-2",
            title="Systems & interactions",
            rationale="Show how the primitives interact and what breaks without them.",
            units=[
                CurriculumUnit(
                    id="unit-2-1",
                    title="Interactions",
                    objective="Map interactions and dependencies.",
                    first_principles=[
                        "Show causal links between primitives.",
                        "Remove one primitive and observe the outcome.",
                    ],
                    checkpoints=["Sketch a dependency map."],
                )
            ],
        ),
        CurriculumModule(
            id="module-3",
            title="Applications & synthesis",
            rationale="Apply knowledge to create artifacts and innovations.",
            units=[
                CurriculumUnit(
                    id="unit-3-1",
                    title="Applied build",
                    objective="Build a practical experiment or project.",
                    first_principles=[
                        "Translate primitives into a real-world constraint.",
                        "Validate with evidence.",
                    ],
                    checkpoints=["Deliver a small prototype or report."],
                )
            ],
        ),
    ]
    return CurriculumPlan(
        id=f"curriculum-{slugify(topic)}-{int(now)}",
        goal_id=goal_id,
        created_at=now,
        summary=f"First-principles curriculum for {topic}.",
        story=(
            f"We begin by isolating the smallest primitives in {topic}, build their "
            "interactions into a system, then apply them in real-world constraints "
            "until you can create novel outputs."
        ),
        tree=tree_from_modules(topic, modules),
        modules=modules,
    )


# --- dict helpers over the persisted curriculum -----------------------------

def collect_tree_ids(tree: Optional[Dict[str, Any]]) -> List[str]:
    if not tree:
        return []
    ids = [tree["id"]] if tree.get("id") else []
    for child in tree.get("children") or []:
        ids.extend(collect_tree_ids(child))
    return ids


def tree_titles(tree: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not tree:
        return {}
    titles = {tree["id"]: tree.get("title", "")} if tree.get("id") else {}
    for child in tree.get("children") or []:
        titles.update(tree_titles(child))
    return titles


def initial_progress(
    tree: Optional[Dict[str, Any]],
    previous: Optional[Dict[str, str]] = None,
    previous_tree: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    """
    Entry for every tree id. Surviving ids keep their earlier status; when
    ``previous_tree`` is given an id only survives if its title is unchanged.
    """
    previous = previous or {}
    titles = tree_titles(tree)
    old_titles = tree_titles(previous_tree) if previous_tree is not None else titles
    return {
        node_id: previous.get(node_id, ProgressStatus.NOT_STARTED.value)
        if old_titles.get(node_id) == title else ProgressStatus.NOT_STARTED.value
        for node_id, title in titles.items()
    }


def stale_unit_ids(previous: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]]) -> List[str]:
    """Unit ids of ``previous`` that left ``current`` or now name a different unit"""
    titles = {unit.get("id"): unit.get("title") for _, unit in iter_units(current)}
    return [unit["id"] for _, unit in iter_units(previous) if titles.get(unit.get("id")) != unit.get("title")]


def iter_units(curriculum: Optional[Dict[str, Any]]) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """``(module, unit)`` pairs in curriculum order"""
    if not curriculum:
        return []
    return [
        (module, unit)
        for module in curriculum.get("modules") or []
        for unit in module.get("units") or []
    ]


def find_unit(curriculum: Optional[Dict[str, Any]], unit_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for _, unit in iter_units(curriculum):
        if unit.get("id") == unit_id:
            return unit
    return None


def module_of(curriculum: Optional[Dict[str, Any]], unit_id: str) -> Optional[Dict[str, Any]]:
    for module, unit in iter_units(curriculum):
        if unit.get("id") == unit_id:
            return module
    return None


def resolve_unit(curriculum: Optional[Dict[str, Any]], query: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Look a unit up by id, then exact title, then title substring, then the
    closest fuzzy title match.
    """
    if not query:
        return None
    units = [unit for _, unit in iter_units(curriculum)]
    for unit in units:
        if unit.get("id") == query:
            return unit
    needle = str(query).strip().lower()
    for unit in units:
        if str(unit.get("title", "")).lower() == needle:
            return unit
    for unit in units:
        title = str(unit.get("title", "")).lower()
        if needle and (needle in title or (title and title in needle)):
            return unit
    titles = [str(unit.get("title", "")).lower() for unit in units]
    close = difflib.get_close_matches(needle, titles, n=1, cutoff=0.6)
    if close:
        return units[titles.index(close[0])]
    return None


def next_unit(curriculum: Optional[Dict[str, Any]], current_id: Optional[str]) -> Optional[Dict[str, Any]]:
    units = [unit for _, unit in iter_units(curriculum)]
    for index, unit in enumerate(units):
        if unit.get("id") == current_id:
            return units[index + 1] if index + 1 < len(units) else None
    return units[0] if units else None


def first_unfinished_unit(
    curriculum: Optional[Dict[str, Any]],
    progress: Dict[str, str],
) -> Optional[Dict[str, Any]]:
    for _, unit in iter_units(curriculum):
        if progress.get(unit.get("id")) != ProgressStatus.DONE.value:
            return unit
    return None


def _combined_status(statuses: List[str]) -> str:
    if statuses and all(s == ProgressStatus.DONE.value for s in statuses):
        return ProgressStatus.DONE.value
    if any(s != ProgressStatus.NOT_STARTED.value for s in statuses):
        return ProgressStatus.IN_PROGRESS.value
    return ProgressStatus.NOT_STARTED.value


def rollup_progress(curriculum: Optional[Dict[str, Any]], progress: Dict[str, str]) -> Dict[str, str]:
    """Derive module and root statuses from their units"""
    if not curriculum:
        return dict(progress)
    rolled = dict(progress)
    module_statuses = []
    for module in curriculum.get("modules") or []:
        unit_statuses = [
            rolled.get(unit["id"], ProgressStatus.NOT_STARTED.value)
            for unit in module.get("units") or []
        ]
        status = _combined_status(unit_statuses)
        if module.get("id") in rolled:
            rolled[module["id"]] = status
        module_statuses.append(status)
    root_id = (curriculum.get("tree") or {}).get("id")
    if root_id in rolled:
        rolled[root_id] = _combined_status(module_statuses)
    return rolled


__all__ = [
    "MAX_TREE_DEPTH",
    "MAX_MODULES",
    "CurriculumUnit",
    "CurriculumModule",
    "CurriculumTreeNode",
    "CurriculumPlan",
    "tree_from_modules",
    "tree_covers",
    "fallback_curriculum",
    "collect_tree_ids",
    "tree_titles",
    "initial_progress",
    "stale_unit_ids",
    "iter_units",
    "find_unit",
    "module_of",
    "resolve_unit",
    "next_unit",
    "first_unfinished_unit",
    "rollup_progress",
]
