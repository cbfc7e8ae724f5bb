from __future__ import annotations

import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .capabilities import SYSTEM_CAPABILITIES
from .errors import ConfigError
from .exec_parser import parse_exec
from .models import (
    AgentDefinition,
    ExecCall,
    Message,
    Presence,
    RequestFormat,
    ResponseTemplate,
    Section,
    SkillParam,
    SkillSignature,
    Visibility,
)
from .validator import check_format

logger = logging.getLogger("agentflow")

# Preset YAML files live next to this module (agentflow/presets/*.yaml).
PRESETS_DIR = Path(__file__).parent / "presets"

_SIGNATURE_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*\((?P<params>[^()]*)\)$")
_PARAM_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*(?::\s*(?P<type>[A-Za-z_][\w.\[\], ]*))?$")


def coerce_messages(raw: Iterable[Any]) -> List[Message]:
    """Turn parsed document entries into Message records, keeping order."""
    messages: List[Message] = []
    seen = set()
    for index, entry in enumerate(raw):
        if isinstance(entry, Message):
            message = entry
        elif isinstance(entry, dict):
            data = dict(entry)
            if "id" in data and data["id"] is not None:
                data["id"] = str(data["id"])
            try:
                message = Message(**data)
            except PydanticValidationError as exc:
                raise ConfigError(f"Invalid message at position {index}", details=exc.errors()) from exc
        else:
            raise ConfigError(f"Message at position {index} must be a mapping")
        if message.id in seen:
            raise ConfigError(f"Duplicate message id: {message.id}")
        seen.add(message.id)
        messages.append(message)
    return messages


def load_messages(path: Union[str, Path]) -> List[Message]:
    """Read a YAML message document from disk."""
    doc_path = Path(path)
    if not doc_path.exists():
        raise ConfigError(f"Configuration file not found: {doc_path}")

    with doc_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict) and "messages" in data:
        data = data["messages"]
    if not isinstance(data, list):
        raise ConfigError("Configuration YAML must deserialize to a sequence of messages")

    messages = coerce_messages(data)
    logger.info("loaded configuration path=%s messages=%d", doc_path, len(messages))
    return messages


def load_preset_messages(preset_id: str) -> List[Message]:
    return load_messages(PRESETS_DIR / f"{preset_id}.yaml")


def list_preset_ids() -> List[str]:
    """Discover preset ids from agentflow/presets/*.yaml (filename stem = id). Returns sorted list."""
    if not PRESETS_DIR.exists():
        return []
    ids = [p.stem for p in PRESETS_DIR.glob("*.yaml") if p.is_file()]
    return sorted(ids)


def parse_signature(text: str, visibility: Visibility, body: Sequence[str] = ()) -> SkillSignature:
    if not isinstance(text, str):
        raise ConfigError(f"Skill signature must be a string, got {type(text).__name__}")
    match = _SIGNATURE_RE.match(text.strip())
    if not match:
        raise ConfigError(f"Malformed skill signature: {text!r}")

    params: List[SkillParam] = []
    raw_params = match.group("params").strip()
    if raw_params:
        for part in raw_params.split(","):
            param = _PARAM_RE.match(part.strip())
            if not param:
                raise ConfigError(f"Malformed parameter {part.strip()!r} in skill signature {text!r}")
            params.append(SkillParam(name=param.group("name"), type=param.group("type")))

    names = [p.name for p in params]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate parameter name in skill signature {text!r}")

    return SkillSignature(
        name=match.group("name"),
        params=tuple(params),
        visibility=visibility,
        body=tuple(str(step) for step in body),
    )


def _parse_skill_entry(entry: Any, visibility: Visibility) -> SkillSignature:
    # Either "talk(text)" or {"fight(name)": ["step", ...]}.
    if isinstance(entry, dict):
        if len(entry) != 1:
            raise ConfigError(f"Skill mapping must have exactly one signature key: {entry!r}")
        (signature, body), = entry.items()
        if body is None:
            body = []
        elif isinstance(body, str):
            body = [body]
        elif not isinstance(body, list):
            raise ConfigError(f"Body of skill {signature!r} must be a list of steps")
        return parse_signature(signature, visibility, body)
    return parse_signature(entry, visibility)


def _build_skills(raw: Any) -> Dict[str, SkillSignature]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("agent.skills must be a mapping of visibility to skill list")

    skills: Dict[str, SkillSignature] = {}
    for key, entries in raw.items():
        try:
            visibility = Visibility(str(key))
        except ValueError as exc:
            raise ConfigError(f"Unknown skill visibility: {key!r}") from exc
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ConfigError(f"agent.skills.{key} must be a list")
        for entry in entries:
            skill = _parse_skill_entry(entry, visibility)
            if skill.name in skills:
                raise ConfigError(f"Duplicate skill name: {skill.name}")
            if skill.body:
                logger.debug("skill=%s body_steps=%d", skill.name, len(skill.body))
            skills[skill.name] = skill
    return skills


def _build_requests(raw: Any) -> Dict[str, RequestFormat]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        raw = {"default": raw}
    if not isinstance(raw, dict):
        raise ConfigError("agent.requests must be a mapping of name to format")

    requests: Dict[str, RequestFormat] = {}
    for name, declared in raw.items():
        if isinstance(declared, str):
            fmt = RequestFormat(template=declared)
        elif isinstance(declared, dict) and isinstance(declared.get("format"), str):
            fmt = RequestFormat(template=declared["format"], schema=declared.get("schema"))
        else:
            raise ConfigError(f"Request format {name!r} must be a string or a mapping with 'format'")
        check_format(fmt)
        requests[str(name)] = fmt
    return requests


def _check_exec_targets(calls: Iterable[ExecCall], skills: Dict[str, SkillSignature], where: str) -> None:
    for call in calls:
        target = call.target
        # Bare names resolve like the capability resolver: system directive, else skill.
        if len(target) == 1 and target[0] not in SYSTEM_CAPABILITIES:
            target = ("agent", "skills") + target
        if target[:2] != ("agent", "skills"):
            continue
        if len(target) != 3 or target[2] not in skills:
            raise ConfigError(f"{where} references undeclared skill {call.path!r}")


def _build_section(name: str, raw: Any) -> Section:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Section {name!r} must be a mapping")

    exec_raw = raw.get("exec") or []
    if isinstance(exec_raw, str):
        exec_raw = [exec_raw]
    if not isinstance(exec_raw, list):
        raise ConfigError(f"Section {name!r} exec must be a string or a list")

    try:
        presence = Presence(str(raw.get("presence", Presence.MANDATORY.value)))
    except ValueError as exc:
        raise ConfigError(f"Section {name!r} has unknown presence {raw.get('presence')!r}") from exc

    constraint = raw.get("constraint")
    return Section(
        name=name,
        meta=str(raw.get("meta") or ""),
        exec=tuple(parse_exec(item) for item in exec_raw),
        constraint=None if constraint is None else str(constraint),
        presence=presence,
    )


def _build_responses(raw: Any, skills: Dict[str, SkillSignature]) -> Dict[str, ResponseTemplate]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigError("agent.responses must be a non-empty mapping")

    responses: Dict[str, ResponseTemplate] = {}
    for key, declared in raw.items():
        if not isinstance(declared, dict):
            raise ConfigError(f"Response {key!r} must be a mapping")
        status = declared.get("status")
        if isinstance(status, bool) or not isinstance(status, int):
            raise ConfigError(f"Response {key!r} must declare an integer status")
        sections_raw = declared.get("sections") or {}
        if not isinstance(sections_raw, dict):
            raise ConfigError(f"Response {key!r} sections must be a mapping")
        sections = tuple(_build_section(str(name), body) for name, body in sections_raw.items())
        for section in sections:
            _check_exec_targets(section.exec, skills, f"Section {key}.{section.name}")
        responses[str(key)] = ResponseTemplate(key=str(key), status=status, sections=sections)
    return responses


def _agent_message(messages: Sequence[Message]) -> Message:
    candidates = [m for m in messages if m.type == "system" and m.payload.get("type") == "agent"]
    if not candidates:
        raise ConfigError("Configuration has no system/agent message")
    if len(candidates) > 1:
        raise ConfigError(
            "Configuration has more than one system/agent message",
            details={"ids": [m.id for m in candidates]},
        )
    return candidates[0]


def build_agent(messages: Sequence[Message], referenced_keys: Iterable[str] = ()) -> AgentDefinition:
    """
    Build the immutable AgentDefinition from the ordered messages.

    `referenced_keys` are response keys that flow logic refers to; each must
    be declared.
    """
    message = _agent_message(messages)
    payload = message.payload

    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Agent must declare a non-empty name")

    core_rules_raw = payload.get("core_rules") or []
    if not isinstance(core_rules_raw, list):
        raise ConfigError("agent.core_rules must be a list")

    skills = _build_skills(payload.get("skills"))
    requests = _build_requests(payload.get("requests"))
    responses = _build_responses(payload.get("responses"), skills)

    missing = [key for key in referenced_keys if key not in responses]
    if missing:
        raise ConfigError("Flow logic references undeclared responses", details={"missing": missing})

    agent = AgentDefinition(
        name=name,
        directive=str(payload.get("directive") or ""),
        core_rules=tuple(str(rule) for rule in core_rules_raw),
        skills=MappingProxyType(skills),
        requests=MappingProxyType(requests),
        responses=MappingProxyType(responses),
    )
    logger.info(
        "built agent name=%s skills=%d requests=%d responses=%d",
        agent.name,
        len(skills),
        len(requests),
        len(responses),
    )
    return agent


def referenced_skill_calls(agent: AgentDefinition) -> List[Tuple[Section, ExecCall]]:
    """All (section, exec) pairs across every response template, in declared order."""
    pairs: List[Tuple[Section, ExecCall]] = []
    for template in agent.responses.values():
        for section in template.sections:
            for call in section.exec:
                pairs.append((section, call))
    return pairs
