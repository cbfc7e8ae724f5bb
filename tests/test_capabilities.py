from __future__ import annotations

import threading
from typing import Any, Dict

import pytest

from agentflow.capabilities import CapabilityResolver, ConversationMemory, ExecutionContext, RuleBook
from agentflow.errors import CapabilityError, ConfigError
from agentflow.exec_parser import parse_exec
from agentflow.models import AgentDefinition, MemoryPolicy, Message
from agentflow.preset_loader import build_agent

AGENT_PAYLOAD: Dict[str, Any] = {
    "type": "agent",
    "name": "Ava",
    "directive": "Be helpful.",
    "core_rules": ["Be polite."],
    "skills": {"public": ["talk(text, language)"], "private": ["call_help(reason)"]},
    "responses": {"default": {"status": 200, "sections": {}}},
}


@pytest.fixture
def agent() -> AgentDefinition:
    return build_agent([Message(id="agent", type="system", payload=AGENT_PAYLOAD)])


@pytest.fixture
def memory() -> ConversationMemory:
    return ConversationMemory(MemoryPolicy(max_messages=5))


@pytest.fixture
def resolver(agent, memory):
    resolver = CapabilityResolver(agent, RuleBook(agent.core_rules), memory, timeout=0.2)
    yield resolver
    resolver.close()


def _ctx(agent: AgentDefinition, value: Any = "hi") -> ExecutionContext:
    return ExecutionContext(input=value, agent=agent, core_rules=list(agent.core_rules))


def test_registration_rules(resolver):
    assert resolver.register("talk", lambda text, language: text) == "agent.skills.talk"
    assert resolver.register("tools.weather.lookup", lambda: "sunny") == "tools.weather.lookup"

    with pytest.raises(ConfigError):
        resolver.register("agent.skills.dance", lambda: None)
    with pytest.raises(ConfigError):
        resolver.register("system.reset_memory", lambda: None)
    with pytest.raises(ConfigError):
        resolver.register("not a path", lambda: None)
    with pytest.raises(ConfigError):
        resolver.register("talk", "not callable")  # type: ignore[arg-type]


def test_invoke_public_skill_resolves_variables_then_literals(agent, resolver):
    resolver.register("agent.skills.talk", lambda text, language: f"[{language}] {text}")
    ctx = _ctx(agent, "bonjour")

    result = resolver.invoke(parse_exec("agent.skills.talk(input, french)"), ctx, "frontend:0")

    assert result == "[french] bonjour"
    assert ctx.results["frontend:0"] == "[french] bonjour"


def test_response_variable_tracks_latest_result(agent, resolver):
    resolver.register("agent.skills.talk", lambda text, language="en": f"{language}:{text}")
    ctx = _ctx(agent, "hello")

    resolver.invoke(parse_exec("agent.skills.talk(input)"), ctx, "a:0")
    second = resolver.invoke(parse_exec("agent.skills.talk(response, language=10mph)"), ctx, "a:1")

    assert second == "10mph:en:hello"


def test_response_variable_falls_back_to_carried_state(agent):
    ctx = ExecutionContext(input=None, agent=agent, core_rules=[], carried_response={"ready": True})
    assert ctx.lookup("response") == (True, {"ready": True})

    empty = _ctx(agent)
    assert empty.lookup("response") == (False, None)


def test_private_skill_needs_internal_scope(agent, resolver):
    resolver.register("agent.skills.call_help", lambda reason: f"help: {reason}")

    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("agent.skills.call_help(lost)"), _ctx(agent), "k")
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("call_help(lost)"), _ctx(agent), "k")

    assert resolver.call_internal("call_help", "lost") == "help: lost"


def test_unregistered_and_unknown_paths(agent, resolver):
    with pytest.raises(CapabilityError) as exc:
        resolver.invoke(parse_exec("agent.skills.talk(input)"), _ctx(agent), "k")
    assert exc.value.path == "agent.skills.talk"

    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("system.teleport()"), _ctx(agent), "k")
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("agent.skills.dance()"), _ctx(agent), "k")


def test_raising_capability_is_wrapped(agent, resolver):
    def boom(text, language):
        raise RuntimeError("kaput")

    resolver.register("talk", boom)
    with pytest.raises(CapabilityError) as exc:
        resolver.invoke(parse_exec("agent.skills.talk(input, en)"), _ctx(agent), "k")
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert exc.value.details == {"type": "RuntimeError"}


def test_hung_capability_times_out(agent, resolver):
    release = threading.Event()
    resolver.register("talk", lambda text, language: release.wait(5))
    try:
        with pytest.raises(CapabilityError) as exc:
            resolver.invoke(parse_exec("agent.skills.talk(input, en)"), _ctx(agent), "k")
        assert "timed out" in exc.value.message
    finally:
        release.set()


def test_hung_capability_does_not_delay_later_calls(agent, resolver):
    release = threading.Event()
    resolver.register("talk", lambda text, language: release.wait(5) if text == "hang" else text)
    try:
        with pytest.raises(CapabilityError):
            resolver.invoke(parse_exec("agent.skills.talk(input, en)"), _ctx(agent, "hang"), "k1")
        # The hung call still holds its thread; a healthy call must not queue behind it.
        call = parse_exec("agent.skills.talk(input, en)")
        for i in range(3):
            assert resolver.invoke(call, _ctx(agent, f"ok-{i}"), f"k{i + 2}") == f"ok-{i}"
    finally:
        release.set()


def test_closed_resolver_rejects_calls(agent, resolver):
    resolver.register("talk", lambda text, language: text)
    resolver.close()
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("agent.skills.talk(input, en)"), _ctx(agent), "k")


def test_rollback_restores_response_and_rules(agent, resolver):
    ctx = _ctx(agent)
    checkpoint = ctx.checkpoint()
    resolver.invoke(parse_exec("system.response = {'leaked': True}"), ctx, "backend:0")
    resolver.invoke(parse_exec("inject_rule(agent, rule='Whisper.')"), ctx, "backend:1")

    ctx.rollback(checkpoint, "backend:")

    assert not ctx.has_pending_response
    assert ctx.injected == []
    assert ctx.core_rules == ["Be polite."]
    assert ctx.results == {}


def test_inject_rule_is_staged_in_the_context(agent, resolver):
    ctx = _ctx(agent)
    resolver.invoke(parse_exec("inject_rule(agent, rule='Use metric units.')"), ctx, "action:0")

    assert ctx.core_rules == ["Be polite.", "Use metric units."]
    assert ctx.injected == ["Use metric units."]
    # The engine commits staged rules once the invocation succeeds.
    assert resolver.rules.snapshot() == ("Be polite.",)

    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("inject_rule(agent)"), ctx, "action:1")
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("inject_rule(agent, rule='x', extra=1)"), ctx, "action:2")


def test_system_response_assignment(agent, resolver):
    ctx = _ctx(agent)
    assert not ctx.has_pending_response

    resolver.invoke(parse_exec("system.response = {'ready': True}"), ctx, "clean:1")
    assert ctx.pending_response == {"ready": True}

    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("system.mood = 'happy'"), ctx, "clean:2")
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("system.response()"), ctx, "clean:3")


def test_reset_memory_and_load(agent, resolver, memory):
    memory.append({"input": "a", "status": 200})
    ctx = _ctx(agent)
    ctx.memory = memory.snapshot()

    assert resolver.invoke(parse_exec("system.reset_memory()"), ctx, "k") is True
    assert memory.snapshot() == ()
    assert ctx.lookup("memory") == (True, ())

    loaded = resolver.invoke(parse_exec("system.load(agent)"), ctx, "k2")
    assert loaded["name"] == "Ava"
    assert loaded["skills"] == ["talk"]
    with pytest.raises(CapabilityError):
        resolver.invoke(parse_exec("system.load(Bob)"), ctx, "k3")


def test_rule_book_has_no_lost_updates():
    book = RuleBook(("base",))
    threads = [threading.Thread(target=book.append, args=(f"rule-{i}",)) for i in range(64)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    rules = book.snapshot()
    assert len(rules) == 65
    assert set(rules) == {"base"} | {f"rule-{i}" for i in range(64)}


def test_memory_keeps_last_n():
    memory = ConversationMemory(MemoryPolicy(max_messages=2))
    for i in range(4):
        memory.append({"input": i})
    assert [e["input"] for e in memory.snapshot()] == [2, 3]

    disabled = ConversationMemory(MemoryPolicy(max_messages=0))
    disabled.append({"input": 1})
    assert disabled.snapshot() == ()


def test_context_lookup_scopes(agent):
    ctx = _ctx(agent, "q")
    ctx.status = 200
    ctx.action_results.append("first")
    ctx.section_results["frontend"] = ["hello"]

    assert ctx.lookup("input") == (True, "q")
    assert ctx.lookup("status") == (True, 200)
    assert ctx.lookup("result_0") == (True, "first")
    assert ctx.lookup("result_1") == (False, None)
    assert ctx.lookup("frontend") == (True, ["hello"])
    assert ctx.lookup("french") == (False, None)
