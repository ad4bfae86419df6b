import sqlite3

import pytest

from polymath.llm import NullLLMClient, PacedLLMClient
from polymath.memory import SQLiteStateStore
from polymath.system import (
    NOT_STARTED_ERROR,
    PolymathConfig,
    PolymathSystem,
    build_llm_client,
    derive_ui,
)

from helpers import ScriptedLLM, ui_signal


@pytest.fixture
def system(store, clock):
    config = PolymathConfig(enable_research=False)
    return PolymathSystem(config=config, llm=NullLLMClient(), store=store, clock=clock)


class TestFacade:
    def test_calls_before_start(self, system):
        assert system.signal({"payload": {"kind": "quiz"}}) == {"ok": False, "error": NOT_STARTED_ERROR}
        assert system.state() == {"ok": False, "error": NOT_STARTED_ERROR}

    def test_start_returns_questionnaire(self, system):
        result = system.start("Thermodynamics")
        assert result["ok"] is True
        data = result["data"]
        assert data["state"]["phase"] == "intake"
        assert data["ui"]["type"] == "questionnaire"
        assert data["ui"]["payload"] == data["state"]["learning_surface"]
        assert data["passes"] == 1

    def test_blank_topic(self, system):
        assert system.start("   ") == {"ok": False, "error": "Topic is required."}

    def test_invalid_signal(self, system):
        system.start("Thermodynamics")
        assert system.signal(["not", "a", "dict"]) == {"ok": False, "error": "Signal must be an object."}

    def test_full_walkthrough(self, system):
        system.start("Thermodynamics")
        answered = system.signal(ui_signal("submit-answers", {"answers": {"q3": "engines", "q4": "6"}}))
        assert answered["data"]["ui"]["type"] == "curriculum"
        opened = system.signal(ui_signal("open-unit", {"unitId": "unit-2-1"}))
        assert opened["data"]["ui"]["type"] == "learning"
        assert opened["data"]["state"]["active_step"]["unit_id"] == "unit-2-1"
        assert system.state()["data"]["state"]["curriculum_progress"]["unit-2-1"] == "in_progress"

    def test_late_answers_keep_the_lesson_open(self, system):
        system.start("Thermodynamics")
        system.signal(ui_signal("submit-answers", {"answers": {"q3": "engines", "q4": "6"}}))
        system.signal(ui_signal("open-unit", {"unitId": "unit-1-1"}))
        resubmitted = system.signal(ui_signal("submit-answers", {"answers": {"q3": "turbines", "q4": "7"}}))
        assert resubmitted["data"]["state"]["phase"] == "learning"
        assert resubmitted["data"]["ui"]["type"] == "learning"
        deeper = system.signal(ui_signal("deepen-topic", {"unitId": "unit-1-1"}))
        assert deeper["data"]["state"]["depth_level"] == 3

    def test_depth_request_before_a_lesson_is_not_replayed(self, system):
        system.start("Thermodynamics")
        early = system.signal(ui_signal("deepen-topic"))
        assert "deepen-topic" not in [i["type"] for i in early["data"]["state"]["pending_intents"]]
        system.signal(ui_signal("submit-answers", {"answers": {"q3": "engines", "q4": "6"}}))
        system.signal(ui_signal("open-unit", {"unitId": "unit-1-1"}))
        later = system.signal({"payload": {"kind": "revisit"}})
        assert later["data"]["state"]["depth_level"] == 2

    def test_state_is_a_copy(self, system):
        system.start("Thermodynamics")
        system.state()["data"]["state"]["phase"] = "learning"
        assert system.state()["data"]["state"]["phase"] == "intake"

    def test_ingest_errors_become_results(self, clock):
        class ExplodingStore:
            def load(self, user_id, goal_id):
                return None

            def save(self, user_id, goal_id, state):
                raise OSError("read-only file system")

        system = PolymathSystem(config=PolymathConfig(enable_research=False), llm=NullLLMClient(),
                                store=ExplodingStore(), clock=clock)
        assert system.start("Thermodynamics") == {"ok": False, "error": "read-only file system"}

    def test_restart_hydrates_same_topic(self, store, clock):
        config = PolymathConfig(enable_research=False)
        first = PolymathSystem(config=config, llm=NullLLMClient(), store=store, clock=clock)
        first.start("Thermodynamics")
        first.signal(ui_signal("submit-answers", {"answers": {"q3": "engines", "q4": "6"}}))
        second = PolymathSystem(config=config, llm=NullLLMClient(), store=store, clock=clock)
        assert second.start("Thermodynamics")["data"]["state"]["phase"] == "curriculum"

    def test_status_listener(self, store, clock):
        statuses = []
        system = PolymathSystem(config=PolymathConfig(enable_research=False), llm=NullLLMClient(),
                                store=store, clock=clock, on_status=statuses.append)
        system.start("Thermodynamics")
        assert statuses == ["thinking", "idle"]


def test_default_store_is_sqlite(tmp_path):
    config = PolymathConfig(db_path=str(tmp_path / "brain.db"), enable_research=False)
    system = PolymathSystem(config=config, llm=NullLLMClient())
    assert isinstance(system.store, SQLiteStateStore)


def test_research_only_with_enabled_llm():
    assert PolymathSystem(config=PolymathConfig(), llm=NullLLMClient()).research is None
    assert PolymathSystem(config=PolymathConfig(), llm=ScriptedLLM()).research is not None


@pytest.mark.parametrize("phase,expected", [
    (None, "questionnaire"),
    ("intake", "questionnaire"),
    ("questionnaire", "questionnaire"),
    ("curriculum", "curriculum"),
    ("learning", "learning"),
])
def test_derive_ui(phase, expected):
    assert derive_ui({"phase": phase, "learning_surface": None})["type"] == expected


class TestConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("POLYMATH_MAX_SENSE_PASSES", "2")
        monkeypatch.setenv("POLYMATH_ENABLE_RESEARCH", "off")
        monkeypatch.setenv("POLYMATH_LLM_LAYOUT", "yes")
        config = PolymathConfig.from_env()
        assert config.api_key == "sk-test"
        assert config.max_sense_passes == 2
        assert config.enable_research is False
        assert config.prefer_llm_layout is True

    def test_no_key_means_null_client(self):
        assert isinstance(build_llm_client(PolymathConfig(api_key=None)), NullLLMClient)

    def test_key_means_paced_chat_client(self):
        client = build_llm_client(PolymathConfig(api_key="sk-test", max_retries=5))
        assert isinstance(client, PacedLLMClient)
        assert client.max_attempts == 5


class TestClose:
    def test_releases_what_the_system_opened(self, tmp_path):
        config = PolymathConfig(db_path=str(tmp_path / "brain.db"))
        system = PolymathSystem(config=config, llm=ScriptedLLM())
        research = system.research
        store = system.store
        system.close()
        assert research._client.is_closed
        assert system.research is None
        with pytest.raises(sqlite3.ProgrammingError):
            store.load("user-1", "goal-1")

    def test_injected_collaborators_stay_open(self, store):
        lookups = []
        system = PolymathSystem(config=PolymathConfig(), llm=ScriptedLLM(), store=store, research=lookups.append)
        system.close()
        assert system.research == lookups.append
        assert system.store is store
