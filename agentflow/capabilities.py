"""
Capability resolution and execution.

Dotted exec paths resolve against two namespaces:

- `agent.skills.<name>`: callables registered for the agent's declared skills.
  Only public skills are reachable from flows and response sections; private
  skills need the internal scope (`CapabilityResolver.call_internal`).
- `system.<name>`: the engine-provided set (`reset_memory`, `load`,
  `inject_rule` and assignment to `system.response`).

Externally registered callables each run on their own daemon thread behind a
timeout, so a hung capability cannot stall later calls.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .errors import CapabilityError, ConfigError
from .models import AgentDefinition, Argument, ExecCall, MemoryPolicy, VarRef, Visibility

logger = logging.getLogger("agentflow")

SYSTEM_CAPABILITIES = frozenset({"reset_memory", "load", "inject_rule", "response"})

_PATH_RE = re.compile(r"^[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*$")
_UNSET = object()


class RuleBook:
    """Append-only, engine-wide list of core rules."""

    def __init__(self, rules: Tuple[str, ...] = ()):
        self._rules: List[str] = list(rules)
        self._lock = threading.Lock()

    def append(self, rule: str) -> int:
        with self._lock:
            self._rules.append(rule)
            return len(self._rules)

    def extend(self, rules: List[str]) -> int:
        with self._lock:
            self._rules.extend(rules)
            return len(self._rules)

    def snapshot(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._rules)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)


class ConversationMemory:
    """Bounded record of recent exchanges (last N per MemoryPolicy)."""

    def __init__(self, policy: Optional[MemoryPolicy] = None):
        self.policy = policy or MemoryPolicy(mode="last_n", max_messages=10)
        self._events: Deque[Dict[str, Any]] = deque(maxlen=self.policy.max_messages or None)
        self._lock = threading.Lock()

    def append(self, event: Dict[str, Any]) -> None:
        if self.policy.max_messages == 0:
            return
        with self._lock:
            self._events.append(event)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def snapshot(self) -> Tuple[Dict[str, Any], ...]:
        with self._lock:
            return tuple(self._events)


@dataclass
class ExecutionContext:
    """Per-invocation state. Never shared between invocations."""

    input: Any
    agent: AgentDefinition
    core_rules: List[str]
    memory: Tuple[Dict[str, Any], ...] = ()
    carried_response: Any = None
    status: Optional[int] = None
    results: Dict[str, Any] = field(default_factory=dict)
    action_results: List[Any] = field(default_factory=list)
    section_results: Dict[str, List[Any]] = field(default_factory=dict)
    pending_response: Any = _UNSET
    # Rules injected by this invocation; committed to the RuleBook only on success.
    injected: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_pending_response(self) -> bool:
        return self.pending_response is not _UNSET

    def record(self, key: str, value: Any) -> None:
        self.results[key] = value

    def discard(self, prefix: str) -> None:
        for key in [k for k in self.results if k.startswith(prefix)]:
            del self.results[key]

    def checkpoint(self) -> Tuple[Any, int, int]:
        return self.pending_response, len(self.injected), len(self.core_rules)

    def rollback(self, checkpoint: Tuple[Any, int, int], prefix: str) -> None:
        """Undo the side effects recorded since `checkpoint` under result keys starting with `prefix`."""
        pending, injected, rules = checkpoint
        self.discard(prefix)
        self.pending_response = pending
        del self.injected[injected:]
        del self.core_rules[rules:]

    def lookup(self, name: str) -> Tuple[bool, Any]:
        if name == "input":
            return True, self.input
        if name == "status":
            return True, self.status
        if name == "core_rules":
            return True, tuple(self.core_rules)
        if name == "memory":
            return True, self.memory
        if name == "agent":
            return True, self.agent
        if name == "response":
            if self.results:
                return True, next(reversed(self.results.values()))
            if self.carried_response is not None:
                return True, self.carried_response
            return False, None
        if name in self.section_results:
            return True, self.section_results[name]
        if name.startswith("result_") and name[7:].isdigit():
            index = int(name[7:])
            if index < len(self.action_results):
                return True, self.action_results[index]
        return False, None


@dataclass(frozen=True)
class _Resolved:
    path: str
    fn: Callable[..., Any]
    builtin: bool


class CapabilityResolver:
    def __init__(
        self,
        agent: AgentDefinition,
        rules: RuleBook,
        memory: ConversationMemory,
        *,
        timeout: float = 5.0,
    ):
        self.agent = agent
        self.rules = rules
        self.memory = memory
        self.timeout = timeout
        self._registry: Dict[str, Callable[..., Any]] = {}
        self._lock = threading.Lock()
        self._closed = False

    # -- registration --------------------------------------------------------

    def normalize(self, path: str) -> str:
        if not isinstance(path, str) or not _PATH_RE.match(path):
            raise ConfigError(f"Invalid capability path: {path!r}")
        if "." not in path:
            # A bare name is either a system directive or a skill.
            return f"system.{path}" if path in SYSTEM_CAPABILITIES else f"agent.skills.{path}"
        return path

    def register(self, path: str, fn: Callable[..., Any]) -> str:
        if not callable(fn):
            raise ConfigError(f"Capability {path!r} must be callable")
        full = self.normalize(path)
        parts = full.split(".")
        if parts[:2] == ["agent", "skills"]:
            if len(parts) != 3 or parts[2] not in self.agent.skills:
                raise ConfigError(f"Cannot register undeclared skill {full!r}")
        elif parts[0] == "system" and len(parts) == 2 and parts[1] in SYSTEM_CAPABILITIES:
            raise ConfigError(f"System capability {full!r} is built in and cannot be replaced")
        with self._lock:
            self._registry[full] = fn
        logger.debug("registered capability path=%s", full)
        return full

    def is_registered(self, path: str) -> bool:
        full = self.normalize(path)
        parts = full.split(".")
        if parts[0] == "system" and len(parts) == 2 and parts[1] in SYSTEM_CAPABILITIES:
            return True
        with self._lock:
            return full in self._registry

    # -- resolution ----------------------------------------------------------

    def resolve(self, call: ExecCall, *, internal: bool = False) -> _Resolved:
        full = self.normalize(call.path)
        parts = full.split(".")

        if parts[:2] == ["agent", "skills"]:
            skill = self.agent.skills.get(parts[2]) if len(parts) == 3 else None
            if skill is None:
                raise CapabilityError(f"Unknown skill {full!r}", path=full)
            if skill.visibility is Visibility.PRIVATE and not internal:
                raise CapabilityError(f"Private skill {skill.name!r} is not reachable from here", path=full)

        if parts[0] == "system" and len(parts) == 2 and parts[1] in SYSTEM_CAPABILITIES:
            if parts[1] == "response":
                raise CapabilityError("system.response can only be assigned", path=full)
            return _Resolved(path=full, fn=getattr(self, f"_system_{parts[1]}"), builtin=True)

        with self._lock:
            fn = self._registry.get(full)
        if fn is None:
            raise CapabilityError(f"No capability registered for {full!r}", path=full)
        return _Resolved(path=full, fn=fn, builtin=False)

    def _resolve_argument(self, arg: Argument, ctx: Optional[ExecutionContext]) -> Any:
        if isinstance(arg, VarRef):
            if ctx is not None:
                found, value = ctx.lookup(arg.name)
                if found:
                    return value
            # Unresolved bare tokens are literals (e.g. `french`, `10mph`).
            return arg.name
        return arg.value

    def _arguments(self, call: ExecCall, ctx: Optional[ExecutionContext]) -> Tuple[List[Any], Dict[str, Any]]:
        args = [self._resolve_argument(a, ctx) for a in call.args]
        kwargs = {name: self._resolve_argument(a, ctx) for name, a in call.kwargs}
        return args, kwargs

    # -- invocation ----------------------------------------------------------

    def invoke(self, call: ExecCall, ctx: ExecutionContext, key: str, *, internal: bool = False) -> Any:
        """Execute `call` in `ctx` and record the result under `key`."""
        if call.assign:
            result = self._assign(call, ctx)
        else:
            resolved = self.resolve(call, internal=internal)
            args, kwargs = self._arguments(call, ctx)
            if resolved.builtin:
                try:
                    result = resolved.fn(ctx, *args, **kwargs)
                except TypeError as exc:
                    raise CapabilityError(f"Bad arguments for {resolved.path!r}: {exc}", path=resolved.path) from exc
            else:
                result = self._run_bounded(resolved, args, kwargs)
        ctx.record(key, result)
        return result

    def call_internal(self, path: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a capability (private skills included) outside any flow or section."""
        call = ExecCall(target=tuple(self.normalize(path).split(".")), raw=path)
        resolved = self.resolve(call, internal=True)
        if resolved.builtin:
            raise CapabilityError(f"System capability {resolved.path!r} needs an execution context", path=resolved.path)
        return self._run_bounded(resolved, list(args), kwargs)

    def _run_bounded(self, resolved: _Resolved, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        if self._closed:
            raise CapabilityError(f"Resolver is closed; cannot run {resolved.path!r}", path=resolved.path)

        # One daemon thread per call: a hung capability only ever holds its own thread.
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(resolved.fn(*args, **kwargs))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=target, name=f"agentflow-capability:{resolved.path}", daemon=True).start()
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            raise CapabilityError(
                f"Capability {resolved.path!r} timed out after {self.timeout:.2f}s",
                path=resolved.path,
            ) from exc
        except CapabilityError:
            raise
        except Exception as exc:
            raise CapabilityError(
                f"Capability {resolved.path!r} failed: {exc}",
                path=resolved.path,
                details={"type": type(exc).__name__},
            ) from exc

    def _assign(self, call: ExecCall, ctx: ExecutionContext) -> Any:
        if call.path != "system.response":
            raise CapabilityError(f"Only system.response is assignable, not {call.path!r}", path=call.path)
        value = self._resolve_argument(call.args[0], ctx)
        ctx.pending_response = value
        return value

    def close(self) -> None:
        self._closed = True

    # -- system capabilities -------------------------------------------------

    def _system_reset_memory(self, ctx: ExecutionContext) -> bool:
        self.memory.clear()
        ctx.memory = ()
        return True

    def _system_load(self, ctx: ExecutionContext, agent: Any = None) -> Dict[str, Any]:
        if agent is not None and not isinstance(agent, AgentDefinition) and agent != self.agent.name:
            raise CapabilityError(f"Cannot load unknown agent {agent!r}", path="system.load")
        return {
            "name": self.agent.name,
            "directive": self.agent.directive,
            "core_rules": list(ctx.core_rules),
            "skills": [s.name for s in self.agent.public_skills()],
        }

    def _system_inject_rule(self, ctx: ExecutionContext, agent: Any = None, rule: Any = None) -> str:
        if not isinstance(rule, str) or not rule.strip():
            raise CapabilityError("inject_rule needs a non-empty rule", path="system.inject_rule")
        ctx.injected.append(rule)
        ctx.core_rules.append(rule)
        logger.debug("staged rule agent=%s staged=%d", self.agent.name, len(ctx.injected))
        return rule
