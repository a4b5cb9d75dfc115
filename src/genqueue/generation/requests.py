"""Per-kind request builders turning job input into provider requests."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from genqueue.generation.errors import UnknownJobKindError
from genqueue.generation.provider import GenerationRequest
from genqueue.jobs.models import JobKind, parse_job_kind

logger = logging.getLogger(__name__)

_SYSTEM_INSTRUCTION = "Answer with a single JSON document and no surrounding prose."

RequestBuilder = Callable[[Mapping[str, Any]], GenerationRequest]


def build_request(kind: str, payload: Mapping[str, Any]) -> GenerationRequest:
    """Build the provider request for a job kind."""

    job_kind = parse_job_kind(kind)
    builder = REQUEST_BUILDERS.get(job_kind) if job_kind is not None else None
    if builder is None:
        raise UnknownJobKindError(f"Unknown job kind: {kind!r}")
    return builder(payload)


def _build_generate(payload: Mapping[str, Any]) -> GenerationRequest:
    inspiration = _field(payload, "inspiration", kind=JobKind.GENERATE)
    domain = _field(payload, "domain", kind=JobKind.GENERATE)
    prompt = (
        f'Design a novel algorithm inspired by "{inspiration}" for the problem domain '
        f'of "{domain}". Return an object with "name", "description" and "steps".'
    )
    return _request(JobKind.GENERATE, prompt)


def _build_synthesize(payload: Mapping[str, Any]) -> GenerationRequest:
    algorithms = payload.get("algorithms") or []
    if not algorithms:
        logger.warning("Job input for %s has no algorithms", JobKind.SYNTHESIZE.value)
    lines = [f"- {_summary(item)}" for item in algorithms]
    prompt = "Combine the following algorithms into one hybrid algorithm:\n" + "\n".join(lines)
    focus = payload.get("focus")
    if focus:
        prompt += f"\nFocus specifically on: {focus}"
    prompt += '\nReturn an object with "name", "description" and "steps".'
    return _request(JobKind.SYNTHESIZE, prompt)


def _build_analyze(payload: Mapping[str, Any]) -> GenerationRequest:
    algorithm = _field(payload, "algorithm", kind=JobKind.ANALYZE)
    analysis_type = str(payload.get("analysis_type") or "sanity")
    prompt = (
        f"Perform a {analysis_type} analysis of this algorithm:\n{_summary(algorithm)}\n"
        'Return an object with "summary" and "findings".'
    )
    return _request(JobKind.ANALYZE, prompt)


def _build_improve(payload: Mapping[str, Any]) -> GenerationRequest:
    algorithm = _field(payload, "algorithm", kind=JobKind.IMPROVE)
    description = _field(payload, "improvement_description", kind=JobKind.IMPROVE)
    improvement_type = str(payload.get("improvement_type") or "general improvement")
    prompt = (
        f"Improve this algorithm:\n{_summary(algorithm)}\n"
        f"Issue or enhancement: {description}\nImprovement type: {improvement_type}\n"
        'Return an object with "name", "description", "steps" and "changes".'
    )
    return _request(JobKind.IMPROVE, prompt)


REQUEST_BUILDERS: dict[JobKind, RequestBuilder] = {
    JobKind.GENERATE: _build_generate,
    JobKind.SYNTHESIZE: _build_synthesize,
    JobKind.ANALYZE: _build_analyze,
    JobKind.IMPROVE: _build_improve,
}


def _request(kind: JobKind, prompt: str) -> GenerationRequest:
    return GenerationRequest(
        kind=kind.value,
        prompt=prompt,
        system_instruction=_SYSTEM_INSTRUCTION,
    )


def _field(payload: Mapping[str, Any], name: str, *, kind: JobKind) -> Any:
    value = payload.get(name)
    if value in (None, ""):
        logger.warning("Job input for %s is missing field %r", kind.value, name)
        return ""
    return value


def _summary(item: Any) -> str:
    if isinstance(item, str):
        return item
    return json.dumps(item, ensure_ascii=False, sort_keys=True)
