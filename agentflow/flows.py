"""
Flow registry and evaluator.

Flow logic is a deliberately small conditional program over `input`,
`status` and `response`:

    if input is None or not valid(input):
        status = 400
        response = [agent.responses.invalid]
    else:
        status = 200
        response = ["inject_rule(agent, rule='Be brief')", "default"]

The text is parsed once with the `ast` module and converted into the tagged
nodes below; anything outside that shape is a ConfigError at load time.
Evaluation is a pure function of (flow, input, agent).
"""

from __future__ import annotations

import ast
import logging
import textwrap
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .capabilities import SYSTEM_CAPABILITIES
from .errors import ConfigError
from .exec_parser import is_call_shaped, is_path, parse_exec
from .models import AgentDefinition, ExecCall, Message
from .validator import ValidationResult, validate_request

logger = logging.getLogger("agentflow")

_CONFORMS_FUNCS = {"valid", "conforms", "matches"}


# -- predicate nodes ---------------------------------------------------------


@dataclass(frozen=True)
class IsAbsent:
    pass


@dataclass(frozen=True)
class Truthy:
    pass


@dataclass(frozen=True)
class Equals:
    value: Any


@dataclass(frozen=True)
class Conforms:
    request: Optional[str] = None  # None selects the agent's default request format


@dataclass(frozen=True)
class Not:
    operand: "Predicate"


@dataclass(frozen=True)
class AnyOf:
    operands: Tuple["Predicate", ...]


@dataclass(frozen=True)
class AllOf:
    operands: Tuple["Predicate", ...]


Predicate = Union[IsAbsent, Truthy, Equals, Conforms, Not, AnyOf, AllOf]


# -- statement nodes ---------------------------------------------------------


@dataclass(frozen=True)
class Label:
    key: str


@dataclass(frozen=True)
class Action:
    call: ExecCall


ResponseEntry = Union[Label, Action]


@dataclass(frozen=True)
class Branch:
    status: int
    entries: Tuple[ResponseEntry, ...]


@dataclass(frozen=True)
class Conditional:
    test: Predicate
    body: Branch
    orelse: Union[Branch, "Conditional"]


@dataclass(frozen=True)
class FlowDefinition:
    id: str
    logic: Conditional
    source: str = ""
    type: str = "flow"

    def branches(self) -> Iterator[Branch]:
        node: Union[Branch, Conditional] = self.logic
        while isinstance(node, Conditional):
            yield node.body
            node = node.orelse
        yield node

    def predicates(self) -> Iterator[Predicate]:
        node: Union[Branch, Conditional] = self.logic
        while isinstance(node, Conditional):
            yield from _walk_predicate(node.test)
            node = node.orelse


@dataclass(frozen=True)
class FlowOutcome:
    status: int
    actions: Tuple[ExecCall, ...]
    labels: Tuple[str, ...]
    validation: Optional[ValidationResult] = None

    @property
    def template_key(self) -> Optional[str]:
        return self.labels[0] if self.labels else None


def _walk_predicate(pred: Predicate) -> Iterator[Predicate]:
    yield pred
    if isinstance(pred, Not):
        yield from _walk_predicate(pred.operand)
    elif isinstance(pred, (AnyOf, AllOf)):
        for operand in pred.operands:
            yield from _walk_predicate(operand)


# -- parsing -----------------------------------------------------------------


def _is_input(node: ast.AST) -> bool:
    return isinstance(node, ast.Name) and node.id == "input"


def _dotted(node: ast.AST) -> Optional[List[str]]:
    parts: List[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        return list(reversed(parts))
    return None


def _request_name(node: ast.AST, source: str) -> str:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    if isinstance(node, ast.Name):
        return node.id
    parts = _dotted(node)
    if parts and len(parts) == 3 and parts[:2] == ["agent", "requests"]:
        return parts[2]
    raise ConfigError(f"Unsupported request reference in flow: {ast.unparse(node)!r}", details={"flow": source})


def _parse_predicate(node: ast.AST, source: str) -> Predicate:
    if isinstance(node, ast.BoolOp):
        operands = tuple(_parse_predicate(value, source) for value in node.values)
        return AnyOf(operands) if isinstance(node.op, ast.Or) else AllOf(operands)

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return Not(_parse_predicate(node.operand, source))

    if _is_input(node):
        return Truthy()

    if isinstance(node, ast.Compare) and len(node.ops) == 1 and _is_input(node.left):
        op = node.ops[0]
        right = node.comparators[0]
        if isinstance(right, ast.Constant):
            if isinstance(op, (ast.Is, ast.IsNot)) and right.value is None:
                return IsAbsent() if isinstance(op, ast.Is) else Not(IsAbsent())
            if isinstance(op, ast.Eq):
                return Equals(right.value)
            if isinstance(op, ast.NotEq):
                return Not(Equals(right.value))

    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id in _CONFORMS_FUNCS:
        if not node.args or not _is_input(node.args[0]) or len(node.args) > 2:
            raise ConfigError(
                f"{node.func.id}() expects 'input' and an optional request name",
                details={"flow": source},
            )
        request: Optional[str] = None
        if len(node.args) == 2:
            request = _request_name(node.args[1], source)
        for kw in node.keywords:
            if kw.arg not in ("request", "format"):
                raise ConfigError(f"Unsupported keyword {kw.arg!r} in {node.func.id}()", details={"flow": source})
            request = _request_name(kw.value, source)
        return Conforms(request)

    raise ConfigError(f"Unsupported predicate in flow: {ast.unparse(node)!r}", details={"flow": source})


def _parse_entry(node: ast.AST, source: str) -> ResponseEntry:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        text = node.value.strip()
        if is_call_shaped(text):
            return Action(parse_exec(text))
        if is_path(text):
            parts = text.split(".")
            if len(parts) == 1:
                return Label(text)
            if len(parts) == 3 and parts[:2] == ["agent", "responses"]:
                return Label(parts[2])
        raise ConfigError(f"Unsupported response entry {node.value!r}", details={"flow": source})

    if isinstance(node, ast.Call):
        return Action(parse_exec(ast.unparse(node)))

    parts = _dotted(node)
    if parts and len(parts) == 1:
        return Label(parts[0])
    if parts and len(parts) == 3 and parts[:2] == ["agent", "responses"]:
        return Label(parts[2])
    raise ConfigError(f"Unsupported response entry: {ast.unparse(node)!r}", details={"flow": source})


def _parse_branch(statements: Sequence[ast.stmt], source: str) -> Branch:
    status: Optional[int] = None
    entries: Optional[Tuple[ResponseEntry, ...]] = None

    for stmt in statements:
        if not (
            isinstance(stmt, ast.Assign)
            and len(stmt.targets) == 1
            and isinstance(stmt.targets[0], ast.Name)
            and stmt.targets[0].id in ("status", "response")
        ):
            raise ConfigError(
                f"Flow branches may only assign 'status' and 'response': {ast.unparse(stmt)!r}",
                details={"flow": source},
            )
        name = stmt.targets[0].id
        value = stmt.value
        if name == "status":
            if not (isinstance(value, ast.Constant) and type(value.value) is int):
                raise ConfigError("status must be assigned an integer literal", details={"flow": source})
            status = value.value
        else:
            if not isinstance(value, (ast.List, ast.Tuple)):
                raise ConfigError("response must be assigned a list", details={"flow": source})
            entries = tuple(_parse_entry(elt, source) for elt in value.elts)
            labels = [e.key for e in entries if isinstance(e, Label)]
            if len(labels) > 1:
                raise ConfigError(
                    f"A flow branch may name at most one response template, got {labels!r}",
                    details={"flow": source},
                )

    if status is None or entries is None:
        raise ConfigError("Every flow branch must assign both 'status' and 'response'", details={"flow": source})
    return Branch(status=status, entries=entries)


def _parse_conditional(node: ast.If, source: str) -> Conditional:
    if not node.orelse:
        raise ConfigError("Flow conditional must have an else branch", details={"flow": source})
    test = _parse_predicate(node.test, source)
    body = _parse_branch(node.body, source)
    if len(node.orelse) == 1 and isinstance(node.orelse[0], ast.If):
        orelse: Union[Branch, Conditional] = _parse_conditional(node.orelse[0], source)
    else:
        orelse = _parse_branch(node.orelse, source)
    return Conditional(test=test, body=body, orelse=orelse)


def parse_flow(flow_id: str, source: Any) -> FlowDefinition:
    if not isinstance(source, str) or not source.strip():
        raise ConfigError(f"Flow {flow_id!r} must be a non-empty program string")
    text = textwrap.dedent(source).strip()
    try:
        module = ast.parse(text)
    except SyntaxError as exc:
        raise ConfigError(f"Flow {flow_id!r} is not a recognizable program: {exc.msg}", details={"flow": text}) from exc
    if len(module.body) != 1 or not isinstance(module.body[0], ast.If):
        raise ConfigError(f"Flow {flow_id!r} must be a single top-level if/else", details={"flow": text})
    return FlowDefinition(id=flow_id, logic=_parse_conditional(module.body[0], text), source=text)


# -- registry ----------------------------------------------------------------


@dataclass
class FlowRegistry:
    flows: Dict[str, FlowDefinition] = field(default_factory=dict)

    @classmethod
    def from_messages(cls, messages: Sequence[Message]) -> "FlowRegistry":
        flows: Dict[str, FlowDefinition] = {}
        for message in messages:
            if message.type != "run_loop" or message.payload.get("type") != "flow":
                continue
            if "flow" not in message.payload:
                raise ConfigError(f"run_loop message {message.id!r} has no 'flow' field")
            flows[message.id] = parse_flow(message.id, message.payload["flow"])
        logger.info("registered flows count=%d ids=%s", len(flows), ",".join(flows))
        return cls(flows=flows)

    def __len__(self) -> int:
        return len(self.flows)

    def ids(self) -> List[str]:
        return list(self.flows)

    def get(self, flow_id: Optional[str] = None) -> FlowDefinition:
        if flow_id is None:
            if not self.flows:
                raise ConfigError("No flows are declared")
            return next(iter(self.flows.values()))
        try:
            return self.flows[flow_id]
        except KeyError as exc:
            raise ConfigError(f"Unknown flow id: {flow_id}") from exc

    def referenced_keys(self) -> List[str]:
        keys: List[str] = []
        for flow in self.flows.values():
            for branch in flow.branches():
                for entry in branch.entries:
                    if isinstance(entry, Label) and entry.key not in keys:
                        keys.append(entry.key)
        return keys


def check_references(agent: AgentDefinition, registry: FlowRegistry) -> None:
    """Cross-check flows against the agent; raises ConfigError on the first inconsistency."""
    templates = agent.responses
    statuses = {t.status for t in templates.values()}

    for flow in registry.flows.values():
        for pred in flow.predicates():
            if not isinstance(pred, Conforms):
                continue
            if pred.request is None and agent.default_request() is None:
                raise ConfigError(f"Flow {flow.id!r} validates input but the agent declares no requests")
            if pred.request is not None and pred.request not in agent.requests:
                raise ConfigError(f"Flow {flow.id!r} references undeclared request {pred.request!r}")

        for branch in flow.branches():
            labels = [e.key for e in branch.entries if isinstance(e, Label)]
            missing = [key for key in labels if key not in templates]
            if missing:
                raise ConfigError(f"Flow {flow.id!r} references undeclared responses", details={"missing": missing})
            if not labels and branch.status not in statuses and "default" not in templates:
                raise ConfigError(f"Flow {flow.id!r} sets status {branch.status} with no matching response template")
            for entry in branch.entries:
                if isinstance(entry, Action):
                    _check_action_target(flow.id, entry.call, agent)


def _check_action_target(flow_id: str, call: ExecCall, agent: AgentDefinition) -> None:
    target = call.target
    if len(target) == 1:
        if target[0] in SYSTEM_CAPABILITIES or target[0] in agent.skills:
            return
        raise ConfigError(f"Flow {flow_id!r} calls unknown directive {call.path!r}")
    if target[:2] == ("agent", "skills") and (len(target) != 3 or target[2] not in agent.skills):
        raise ConfigError(f"Flow {flow_id!r} references undeclared skill {call.path!r}")


# -- evaluation --------------------------------------------------------------


class _Evaluation:
    def __init__(self, value: Any, agent: AgentDefinition):
        self.value = value
        self.agent = agent
        self.validation: Optional[ValidationResult] = None

    def test(self, pred: Predicate) -> bool:
        if isinstance(pred, IsAbsent):
            return self.value is None
        if isinstance(pred, Truthy):
            return bool(self.value)
        if isinstance(pred, Equals):
            return self.value == pred.value
        if isinstance(pred, Not):
            return not self.test(pred.operand)
        if isinstance(pred, AnyOf):
            return any(self.test(p) for p in pred.operands)
        if isinstance(pred, AllOf):
            return all(self.test(p) for p in pred.operands)
        if isinstance(pred, Conforms):
            fmt = self.agent.requests[pred.request] if pred.request else self.agent.default_request()
            if fmt is None:
                raise ConfigError("Agent declares no request format")
            result = validate_request(self.value, fmt)
            self.validation = result
            return result.conforms
        raise ConfigError(f"Unknown predicate node: {pred!r}")


def evaluate(flow: FlowDefinition, value: Any, agent: AgentDefinition) -> FlowOutcome:
    """Select the branch for `value` and split its response list into labels and actions."""
    evaluation = _Evaluation(value, agent)
    node: Union[Branch, Conditional] = flow.logic
    while isinstance(node, Conditional):
        node = node.body if evaluation.test(node.test) else node.orelse

    actions = tuple(e.call for e in node.entries if isinstance(e, Action))
    labels = tuple(e.key for e in node.entries if isinstance(e, Label))
    return FlowOutcome(status=node.status, actions=actions, labels=labels, validation=evaluation.validation)
