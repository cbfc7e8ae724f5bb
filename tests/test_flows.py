from __future__ import annotations

import copy
from typing import Any, Dict, List

import pytest

from agentflow.errors import ConfigError
from agentflow.flows import Action, FlowRegistry, Label, check_references, evaluate, parse_flow
from agentflow.models import AgentDefinition, Const, Message
from agentflow.preset_loader import build_agent

REFERENCE_FLOW = """
if input is None or not valid(input):
    status = 400
    response = [agent.responses.invalid]
else:
    status = 200
    response = ["inject_rule(agent, rule='Prefer metric units.')", "default"]
"""

AGENT_PAYLOAD: Dict[str, Any] = {
    "type": "agent",
    "name": "Ava",
    "directive": "Be helpful.",
    "skills": {"public": ["talk(text)"], "private": ["call_help()"]},
    "requests": {"default": 'TEXT="""<content>"""', "query": "Q: <question>"},
    "responses": {
        "default": {"status": 200, "sections": {"frontend": {"exec": ["agent.skills.talk(input)"]}}},
        "invalid": {"status": 400, "sections": {"clean": {"exec": ["system.reset_memory()"]}}},
    },
}


def _agent(responses: Dict[str, Any] | None = None) -> AgentDefinition:
    payload = copy.deepcopy(AGENT_PAYLOAD)
    if responses is not None:
        payload["responses"] = responses
    return build_agent([Message(id="agent", type="system", payload=payload)])


def _flow_message(flow_id: str, flow: Any) -> Message:
    return Message(id=flow_id, type="run_loop", payload={"type": "flow", "flow": flow})


def test_reference_flow_parses_into_branches():
    flow = parse_flow("main", REFERENCE_FLOW)
    branches = list(flow.branches())

    assert [b.status for b in branches] == [400, 200]
    assert branches[0].entries == (Label("invalid"),)
    assert isinstance(branches[1].entries[0], Action)
    assert branches[1].entries[0].call.path == "inject_rule"
    assert branches[1].entries[1] == Label("default")


def test_conforming_input_selects_success_branch():
    agent = _agent()
    outcome = evaluate(parse_flow("main", REFERENCE_FLOW), "What is the weather today?", agent)

    assert outcome.status == 200
    assert len(outcome.actions) == 1
    assert dict(outcome.actions[0].kwargs)["rule"] == Const("Prefer metric units.")
    assert outcome.labels == ("default",)
    assert outcome.validation is not None and outcome.validation.conforms


@pytest.mark.parametrize("value", [None, "", 42, 'TEXT="""unclosed'])
def test_absent_or_non_conforming_input_selects_invalid(value):
    outcome = evaluate(parse_flow("main", REFERENCE_FLOW), value, _agent())

    assert outcome.status == 400
    assert outcome.actions == ()
    assert outcome.template_key == "invalid"


def test_evaluation_is_idempotent():
    flow = parse_flow("main", REFERENCE_FLOW)
    agent = _agent()

    first = evaluate(flow, "hello", agent)
    second = evaluate(flow, "hello", agent)
    assert first == second


def test_elif_chain_and_named_request():
    source = """
    if input is None:
        status = 400
        response = ["invalid"]
    elif conforms(input, agent.requests.query):
        status = 200
        response = [agent.skills.talk(input), "default"]
    else:
        status = 400
        response = ["invalid"]
    """
    flow = parse_flow("routing", source)
    agent = _agent()
    check_references(agent, FlowRegistry(flows={"routing": flow}))

    hit = evaluate(flow, "Q: is it raining?", agent)
    assert hit.status == 200
    assert hit.actions[0].path == "agent.skills.talk"

    miss = evaluate(flow, "no prefix", agent)
    # "no prefix" has no wrapper, so it is taken as plain content and conforms.
    assert miss.status == 200


def test_truthiness_and_equality_predicates():
    source = """
    if not input or input == "stop":
        status = 400
        response = ["invalid"]
    else:
        status = 200
        response = ["default"]
    """
    flow = parse_flow("simple", source)
    agent = _agent()

    assert evaluate(flow, "", agent).status == 400
    assert evaluate(flow, "stop", agent).status == 400
    assert evaluate(flow, "go", agent).status == 200


@pytest.mark.parametrize(
    "source",
    [
        "",
        "status = 200",
        "if input is None:\n    status = 400\n    response = []",
        "if input is None:\n    status = '400'\n    response = []\nelse:\n    status = 200\n    response = []",
        "if input is None:\n    status = 400\nelse:\n    status = 200\n    response = []",
        "if input is None:\n    status = 400\n    response = []\n    x = 1\nelse:\n    status = 200\n    response = []",
        "if len(input) > 3:\n    status = 400\n    response = []\nelse:\n    status = 200\n    response = []",
        "if input is None:\n    status = 400\n    response = 'invalid'\nelse:\n    status = 200\n    response = []",
        "if input is None:\n    status = 400\n    response = ['not a label!']\nelse:\n    status = 200\n    response = []",
        "if input is None:\n  status = 400\n response = []",
    ],
)
def test_malformed_flows_fail_fast(source):
    with pytest.raises(ConfigError):
        parse_flow("bad", source)


def test_branch_naming_two_templates_is_config_error():
    source = REFERENCE_FLOW.replace('"default"]', '"default", "invalid"]')
    with pytest.raises(ConfigError) as exc:
        parse_flow("main", source)
    assert "at most one response template" in exc.value.message


def test_registry_preserves_declaration_order():
    messages: List[Message] = [
        _flow_message("first", REFERENCE_FLOW),
        Message(id="other", type="run_loop", payload={"type": "schedule"}),
        _flow_message("second", REFERENCE_FLOW),
    ]
    registry = FlowRegistry.from_messages(messages)

    assert registry.ids() == ["first", "second"]
    assert registry.get().id == "first"
    assert registry.get("second").id == "second"
    assert registry.referenced_keys() == ["invalid", "default"]
    with pytest.raises(ConfigError):
        registry.get("missing")


def test_run_loop_without_flow_field_is_config_error():
    with pytest.raises(ConfigError):
        FlowRegistry.from_messages([Message(id="loop", type="run_loop", payload={"type": "flow"})])


def test_check_references_rejects_unknown_request():
    source = """
    if not valid(input, 'missing'):
        status = 400
        response = ["invalid"]
    else:
        status = 200
        response = ["default"]
    """
    with pytest.raises(ConfigError):
        check_references(_agent(), FlowRegistry(flows={"f": parse_flow("f", source)}))


def test_check_references_requires_template_for_status():
    source = """
    if input is None:
        status = 400
        response = []
    else:
        status = 201
        response = []
    """
    agent = _agent(
        responses={
            "ok": {"status": 200, "sections": {}},
            "invalid": {"status": 400, "sections": {}},
        }
    )
    with pytest.raises(ConfigError):
        check_references(agent, FlowRegistry(flows={"f": parse_flow("f", source)}))


def test_check_references_rejects_unknown_directive():
    source = """
    if input is None:
        status = 400
        response = ["invalid"]
    else:
        status = 200
        response = ["teleport(input)", "default"]
    """
    with pytest.raises(ConfigError):
        check_references(_agent(), FlowRegistry(flows={"f": parse_flow("f", source)}))
