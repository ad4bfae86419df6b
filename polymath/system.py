"""
Polymath Brain - Main Orchestrator
主系统入口，提供简单的 API

Every façade call returns ``{"ok": True, "data": ...}`` or
``{"ok": False, "error": "..."}`` and never raises.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from loguru import logger

from .agents import (
    Agent,
    CurriculumAgent,
    InterjectionAgent,
    LearningStepBuilderAgent,
    MermaidFixAgent,
    PlannerAgent,
    QuestionAgent,
    QuizCheckAgent,
    RevisionDepthAgent,
    SenseOrchestratorAgent,
    SynthesisAgent,
    TeachingAgent,
    UIBuilderAgent,
    UnderstandingAgent,
)
from .llm import ChatLLMClient, LLMClient, NullLLMClient, PacedLLMClient, configure_default_pacer
from .memory import SQLiteStateStore, StateStore
from .research import ResearchClient
from .state import LearningGoal, Phase, SignalKind, SharedState, now_seconds, snapshot
from .workflow import BrainRuntime, IngestResult


NOT_STARTED_ERROR = "Brain runtime not started."


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PolymathConfig:
    """LLM / 会话配置"""
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    chat_model: str = "gpt-4o-mini"
    image_model: str = "dall-e-3"
    temperature: float = 0.7
    request_timeout: float = 45.0
    min_request_interval: float = 0.5
    max_retries: int = 3
    max_sense_passes: int = 1
    db_path: str = os.path.join(".polymath", "polymath.db")
    user_id: str = "local-user"
    goal_id: str = "goal-1"
    enable_research: bool = True
    prefer_llm_layout: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "PolymathConfig":
        """从环境变量加载配置 (.env is read first)"""
        load_dotenv()
        defaults = cls()
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            api_base=os.getenv("POLYMATH_API_BASE") or None,
            chat_model=os.getenv("POLYMATH_CHAT_MODEL", defaults.chat_model),
            image_model=os.getenv("POLYMATH_IMAGE_MODEL", defaults.image_model),
            temperature=float(os.getenv("POLYMATH_TEMPERATURE", defaults.temperature)),
            request_timeout=float(os.getenv("POLYMATH_REQUEST_TIMEOUT", defaults.request_timeout)),
            min_request_interval=float(os.getenv("POLYMATH_MIN_REQUEST_INTERVAL", defaults.min_request_interval)),
            max_retries=int(os.getenv("POLYMATH_MAX_RETRIES", defaults.max_retries)),
            max_sense_passes=int(os.getenv("POLYMATH_MAX_SENSE_PASSES", defaults.max_sense_passes)),
            db_path=os.getenv("POLYMATH_DB_PATH", defaults.db_path),
            user_id=os.getenv("POLYMATH_USER_ID", defaults.user_id),
            goal_id=os.getenv("POLYMATH_GOAL_ID", defaults.goal_id),
            enable_research=_env_bool("POLYMATH_ENABLE_RESEARCH", defaults.enable_research),
            prefer_llm_layout=_env_bool("POLYMATH_LLM_LAYOUT", defaults.prefer_llm_layout),
            log_level=os.getenv("POLYMATH_LOG_LEVEL", defaults.log_level),
        )


def build_llm_client(config: PolymathConfig) -> LLMClient:
    if not config.api_key:
        logger.warning("No API key provided. Running in fallback mode.")
        return NullLLMClient()
    chat = ChatLLMClient(
        api_key=config.api_key,
        api_base=config.api_base,
        chat_model=config.chat_model,
        image_model=config.image_model,
        temperature=config.temperature,
        request_timeout=config.request_timeout,
    )
    return PacedLLMClient(
        chat,
        pacer=configure_default_pacer(config.min_request_interval),
        max_attempts=config.max_retries,
    )


def build_default_agents(
    llm: Optional[LLMClient] = None,
    research: Optional[Callable[[str], Any]] = None,
    prefer_llm_layout: bool = False,
) -> List[Agent]:
    """The twelve agents plus the UI builder, in registration order"""
    llm = llm or NullLLMClient()
    return [
        UnderstandingAgent(),
        PlannerAgent(llm),
        QuestionAgent(llm),
        CurriculumAgent(llm, research=research),
        LearningStepBuilderAgent(),
        TeachingAgent(llm),
        InterjectionAgent(llm),
        MermaidFixAgent(llm),
        QuizCheckAgent(llm),
        SenseOrchestratorAgent(),
        RevisionDepthAgent(),
        SynthesisAgent(),
        UIBuilderAgent(llm, prefer_llm=prefer_llm_layout),
    ]


def derive_ui(state: SharedState) -> Dict[str, Any]:
    phase = state.get("phase")
    if phase == Phase.LEARNING.value:
        kind = "learning"
    elif phase == Phase.CURRICULUM.value:
        kind = "curriculum"
    else:
        kind = "questionnaire"
    return {"type": kind, "payload": state.get("learning_surface")}


class PolymathSystem:
    """
    Polymath 会话外观 (session façade)

    用法示例:
    ```python
    from polymath import PolymathSystem

    system = PolymathSystem()
    result = system.start("Thermodynamics")
    questions = result["data"]["state"]["questions"]
    system.signal({"payload": {"kind": "ui-intent", "action": "submit-answers",
                               "data": {"answers": {"q3": "build an engine", "q4": "6"}}}})
    ```
    """

    def __init__(
        self,
        config: Optional[PolymathConfig] = None,
        llm: Optional[LLMClient] = None,
        store: Optional[StateStore] = None,
        research: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = now_seconds,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            config: 配置（如果为 None，从环境变量读取）
            llm: 自定义 LLM capability（测试用）
            store: 状态存储（默认 SQLite at ``config.db_path``）
            research: ``lookup(topic)`` callable; defaults to ``ResearchClient`` when enabled
            on_status: receives ``"thinking"`` / ``"idle"`` around each ingest
        """
        self.config = config or PolymathConfig.from_env()
        self.llm = llm or build_llm_client(self.config)
        self._store = store
        self._owns_store = store is None
        self._owns_research = research is None and self.config.enable_research and self.llm.enabled
        if self._owns_research:
            research = ResearchClient()
        self.research = research
        self.clock = clock
        self.on_status = on_status
        self._runtime: Optional[BrainRuntime] = None
        self._lock = threading.Lock()

    @property
    def store(self) -> StateStore:
        if self._store is None:
            self._store = SQLiteStateStore(self.config.db_path)
        return self._store

    @property
    def runtime(self) -> Optional[BrainRuntime]:
        return self._runtime

    def start(self, topic: str) -> Dict[str, Any]:
        """Create (or hydrate) the session for ``topic`` and send the kickoff signal"""
        title = str(topic or "").strip()
        if not title:
            return {"ok": False, "error": "Topic is required."}
        with self._lock:
            try:
                goal = LearningGoal(id=self.config.goal_id, title=title, created_at=self.clock())
                self._runtime = BrainRuntime(
                    user_id=self.config.user_id,
                    goal=goal,
                    agents=build_default_agents(self.llm, self.research, self.config.prefer_llm_layout),
                    llm=self.llm,
                    store=self.store,
                    max_sense_passes=self.config.max_sense_passes,
                    clock=self.clock,
                    on_status=self.on_status,
                )
                result = self._runtime.ingest([{"payload": {"kind": SignalKind.KICKOFF.value}}])
                return self._ok(result)
            except Exception as e:
                logger.exception("Failed to start session")
                return {"ok": False, "error": str(e)}

    def signal(self, signal: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(signal, dict):
            return {"ok": False, "error": "Signal must be an object."}
        with self._lock:
            if self._runtime is None:
                return {"ok": False, "error": NOT_STARTED_ERROR}
            try:
                return self._ok(self._runtime.ingest([signal]))
            except Exception as e:
                logger.exception("Signal ingest failed")
                return {"ok": False, "error": str(e)}

    def state(self) -> Dict[str, Any]:
        with self._lock:
            if self._runtime is None:
                return {"ok": False, "error": NOT_STARTED_ERROR}
            state = snapshot(self._runtime.state)
            return {"ok": True, "data": {"state": state, "ui": derive_ui(state)}}

    def close(self) -> None:
        """Release the HTTP client and SQLite connection this façade opened itself"""
        with self._lock:
            if self._owns_research and self.research is not None:
                self.research.close()
                self.research = None
            if self._owns_store and isinstance(self._store, SQLiteStateStore):
                self._store.close()
                self._store = None
            self._runtime = None

    @staticmethod
    def _ok(result: IngestResult) -> Dict[str, Any]:
        return {
            "ok": True,
            "data": {
                "state": result.state,
                "intents": result.intents,
                "notes": result.notes,
                "passes": result.passes,
                "ui": derive_ui(result.state),
            },
        }


def create_polymath_system(api_key: Optional[str] = None, **kwargs) -> PolymathSystem:
    """
    便捷函数：创建 Polymath 实例

    Args:
        api_key: OpenAI-compatible key（如果为 None，从环境变量读取）
        **kwargs: 其他参数传递给 PolymathSystem
    """
    config = PolymathConfig.from_env()
    if api_key:
        config.api_key = api_key
    return PolymathSystem(config=config, **kwargs)


__all__ = [
    "PolymathConfig",
    "PolymathSystem",
    "build_llm_client",
    "build_default_agents",
    "derive_ui",
    "create_polymath_system",
    "NOT_STARTED_ERROR",
]
