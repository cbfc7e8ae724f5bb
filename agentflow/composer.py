from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .capabilities import CapabilityResolver, ExecutionContext
from .errors import CapabilityError, NoTemplateError, SectionError
from .models import AgentDefinition, Presence, ResponseTemplate, Section

logger = logging.getLogger("agentflow")


def select_template(agent: AgentDefinition, status: int, key: Optional[str] = None) -> ResponseTemplate:
    """
    Pick the response template for `status`.

    An explicit `key` (a response label chosen by the flow) wins. Otherwise the
    first template declaring `status` is used, then the one keyed "default".
    """
    if key is not None:
        try:
            return agent.responses[key]
        except KeyError as exc:
            raise NoTemplateError(f"No response template named {key!r}", details={"key": key}) from exc

    for template in agent.responses.values():
        if template.status == status:
            return template
    if "default" in agent.responses:
        return agent.responses["default"]
    raise NoTemplateError(f"No response template matches status {status}", details={"status": status})


def _render_section(section: Section, ctx: ExecutionContext, resolver: CapabilityResolver) -> List[Any]:
    results: List[Any] = []
    for position, call in enumerate(section.exec):
        results.append(resolver.invoke(call, ctx, f"{section.name}:{position}"))
    return results


def compose(template: ResponseTemplate, ctx: ExecutionContext, resolver: CapabilityResolver) -> Dict[str, Dict[str, Any]]:
    """
    Render sections in declared order.

    A failing mandatory section aborts with SectionError; a failing optional
    section is left out of the output, and its partial results and side
    effects (a system.response assignment, injected rules) are rolled back.
    """
    output: Dict[str, Dict[str, Any]] = {}
    for section in template.sections:
        checkpoint = ctx.checkpoint()
        try:
            results = _render_section(section, ctx, resolver)
        except CapabilityError as exc:
            if section.presence is Presence.MANDATORY:
                raise SectionError(section.name, exc) from exc
            ctx.rollback(checkpoint, f"{section.name}:")
            ctx.errors.append({"section": section.name, "path": exc.path, "message": exc.message})
            logger.warning("omitted optional section=%s path=%s reason=%s", section.name, exc.path, exc.message)
            continue

        ctx.section_results[section.name] = results
        output[section.name] = {
            "meta": section.meta,
            "constraint": section.constraint,
            "results": results,
        }
    return output
