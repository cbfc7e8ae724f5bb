from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .capabilities import CapabilityResolver, ConversationMemory, ExecutionContext, RuleBook
from .composer import compose, select_template
from .config import Settings, get_settings
from .errors import CapabilityError, ConfigError, EngineError, NoTemplateError, SectionError
from .flows import Action, FlowOutcome, FlowRegistry, check_references, evaluate
from .models import AgentDefinition, Message, MemoryPolicy, Presence
from .preset_loader import build_agent, coerce_messages, load_messages, load_preset_messages, referenced_skill_calls

logger = logging.getLogger("agentflow")

_ERROR_STATUS = {
    SectionError: 500,
    NoTemplateError: 500,
    CapabilityError: 502,
}


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_success_envelope(
    output: Dict[str, Any],
    *,
    request_id: str,
    agent: AgentDefinition,
    flow_id: str,
    status: int,
    latency_ms: float,
    validation: Optional[str] = None,
    degraded: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "request_id": request_id,
        "agent": agent.name,
        "flow": flow_id,
        "status": status,
        "latency_ms": latency_ms,
    }
    if validation is not None:
        meta["validation"] = validation
    if degraded:
        meta["degraded"] = degraded
    return {"output": output, "meta": meta}


def build_error_envelope(
    *,
    request_id: str,
    agent: AgentDefinition | None,
    flow_id: str | None,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    meta = {
        "request_id": request_id,
        "agent": agent.name if agent else "unknown",
        "flow": flow_id or "unknown",
    }
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": meta,
    }
    return status_code, body


@dataclass
class EngineResult:
    """Outcome of one invocation: the resolved status plus output or a structured failure."""

    request_id: str
    flow_id: str
    status: int
    output: Optional[Dict[str, Any]]
    latency_ms: float
    agent: AgentDefinition
    error: Optional[EngineError] = None
    validation: Optional[str] = None
    degraded: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def envelope(self) -> Dict[str, Any]:
        if self.error is None:
            return build_success_envelope(
                self.output or {},
                request_id=self.request_id,
                agent=self.agent,
                flow_id=self.flow_id,
                status=self.status,
                latency_ms=self.latency_ms,
                validation=self.validation,
                degraded=self.degraded,
            )
        _, body = build_error_envelope(
            request_id=self.request_id,
            agent=self.agent,
            flow_id=self.flow_id,
            status_code=_ERROR_STATUS.get(type(self.error), 500),
            code=self.error.code,
            message=self.error.message,
            details=self.error.details,
        )
        body["meta"]["status"] = self.status
        return body


class Engine:
    """
    Per-configuration runtime: validate, evaluate flow, run actions, compose.

    The agent model and flow registry are built once and only read afterwards.
    The rule book, conversation memory and carried `system.response` state are
    the only state shared between invocations.
    """

    def __init__(self, agent: AgentDefinition, flows: FlowRegistry, *, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.agent = agent
        self.flows = flows
        self.settings = settings
        self.rules = RuleBook(agent.core_rules)
        self._memory = ConversationMemory(MemoryPolicy(mode="last_n", max_messages=settings.memory_max_messages))
        self.resolver = CapabilityResolver(
            agent,
            self.rules,
            self._memory,
            timeout=settings.capability_timeout_seconds,
        )
        self._state_lock = threading.Lock()
        self._carried_response: Any = None
        self._started = False

    # -- construction --------------------------------------------------------

    @classmethod
    def from_messages(cls, messages: Iterable[Union[Message, Dict[str, Any]]], settings: Optional[Settings] = None) -> "Engine":
        ordered = coerce_messages(messages)
        flows = FlowRegistry.from_messages(ordered)
        agent = build_agent(ordered, referenced_keys=flows.referenced_keys())
        check_references(agent, flows)
        return cls(agent, flows, settings=settings)

    @classmethod
    def from_path(cls, path: Union[str, Path], settings: Optional[Settings] = None) -> "Engine":
        return cls.from_messages(load_messages(path), settings=settings)

    @classmethod
    def from_preset(cls, preset_id: str, settings: Optional[Settings] = None) -> "Engine":
        return cls.from_messages(load_preset_messages(preset_id), settings=settings)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Engine":
        """AGENTFLOW_CONFIG wins over AGENT_PRESET."""
        settings = settings or get_settings()
        if settings.config_path:
            return cls.from_path(settings.config_path, settings=settings)
        return cls.from_preset(settings.agent_preset, settings=settings)

    # -- capabilities --------------------------------------------------------

    def register(self, path: str, fn: Callable[..., Any]) -> str:
        with self._state_lock:
            if self._started:
                raise ConfigError("Capabilities must be registered before the first input is processed")
        return self.resolver.register(path, fn)

    def call_skill(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Internal-scope invocation, the only way to reach private skills."""
        return self.resolver.call_internal(name, *args, **kwargs)

    def verify_capabilities(self) -> None:
        """Raise ConfigError if a mandatory section or flow action points at nothing registered."""
        missing: List[str] = []
        for section, call in referenced_skill_calls(self.agent):
            if section.presence is Presence.MANDATORY and not call.assign and not self.resolver.is_registered(call.path):
                missing.append(f"{section.name}: {call.path}")
        for flow in self.flows.flows.values():
            for branch in flow.branches():
                for entry in branch.entries:
                    if isinstance(entry, Action) and not entry.call.assign and not self.resolver.is_registered(entry.call.path):
                        missing.append(f"{flow.id}: {entry.call.path}")
        if missing:
            raise ConfigError("Unregistered capabilities referenced by configuration", details={"missing": missing})

    def _mark_started(self) -> None:
        with self._state_lock:
            if self._started:
                return
            if self.settings.strict_capabilities:
                self.verify_capabilities()
            self._started = True

    # -- shared state --------------------------------------------------------

    @property
    def core_rules(self) -> Tuple[str, ...]:
        return self.rules.snapshot()

    @property
    def memory(self) -> Tuple[Dict[str, Any], ...]:
        return self._memory.snapshot()

    @property
    def carried_response(self) -> Any:
        with self._state_lock:
            return self._carried_response

    def new_context(self, value: Any) -> ExecutionContext:
        return ExecutionContext(
            input=value,
            agent=self.agent,
            core_rules=list(self.rules.snapshot()),
            memory=self._memory.snapshot(),
            carried_response=self.carried_response,
        )

    # -- invocation ----------------------------------------------------------

    def _run_actions(self, outcome: FlowOutcome, ctx: ExecutionContext) -> None:
        for position, call in enumerate(outcome.actions):
            try:
                result = self.resolver.invoke(call, ctx, f"action:{position}")
            except CapabilityError as exc:
                result = None
                ctx.errors.append({"action": call.raw, "path": exc.path, "message": exc.message})
                logger.warning("flow action failed path=%s reason=%s", exc.path, exc.message)
            ctx.action_results.append(result)

    def process(self, value: Any, flow_id: Optional[str] = None) -> EngineResult:
        """
        Process one input synchronously.

        SectionError and NoTemplateError come back as a failed EngineResult;
        ConfigError (unknown flow id, strict capability check) propagates.
        """
        request_id = new_request_id()
        start = time.monotonic()
        self._mark_started()

        flow = self.flows.get(flow_id or self.settings.default_flow)
        ctx = self.new_context(value)

        outcome = evaluate(flow, value, self.agent)
        ctx.status = outcome.status

        validation: Optional[str] = None
        if outcome.validation is not None and not outcome.validation.conforms:
            validation = outcome.validation.reason or "input does not conform"
        elif value is None and outcome.status >= 400:
            validation = "input is absent"

        error: Optional[EngineError] = None
        output: Optional[Dict[str, Any]] = None
        try:
            self._run_actions(outcome, ctx)
            template = select_template(self.agent, outcome.status, outcome.template_key)
            output = compose(template, ctx, self.resolver)
        except (SectionError, NoTemplateError) as exc:
            error = exc
            logger.warning("invoke aborted request_id=%s code=%s reason=%s", request_id, exc.code, exc.message)

        if error is None:
            if ctx.injected:
                total = self.rules.extend(ctx.injected)
                logger.info("injected rules agent=%s count=%d total_rules=%d", self.agent.name, len(ctx.injected), total)
            if ctx.has_pending_response:
                with self._state_lock:
                    self._carried_response = ctx.pending_response
            self._memory.append({"input": value, "status": outcome.status})

        latency_ms = (time.monotonic() - start) * 1000.0
        _log_invoke(
            request_id=request_id,
            agent=self.agent,
            flow_id=flow.id,
            status=outcome.status,
            ok=error is None,
            latency_ms=latency_ms,
        )
        return EngineResult(
            request_id=request_id,
            flow_id=flow.id,
            status=outcome.status,
            output=output,
            latency_ms=latency_ms,
            agent=self.agent,
            error=error,
            validation=validation,
            degraded=list(ctx.errors),
        )

    def close(self) -> None:
        self.resolver.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _log_invoke(
    *,
    request_id: str,
    agent: AgentDefinition,
    flow_id: str,
    status: int,
    ok: bool,
    latency_ms: float,
) -> None:
    logger.info(
        "invoke request_id=%s agent=%s flow=%s status=%s ok=%s latency_ms=%.2f",
        request_id,
        agent.name,
        flow_id,
        status,
        ok,
        latency_ms,
    )
