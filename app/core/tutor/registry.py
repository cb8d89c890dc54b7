"""Registry of named capabilities the language model may invoke."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session


@dataclass(slots=True)
class CapabilityContext:
    """Request-scoped state handed to every capability body."""

    db: Session
    learner_id: str
    session_id: Optional[UUID] = None


Handler = Callable[[Any, CapabilityContext], Dict[str, Any]]


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Handler

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_model.model_json_schema(by_alias=True),
        }


@dataclass(slots=True)
class CapabilityInvocation:
    """One model-initiated call and what came of it."""

    call_id: str
    name: str
    arguments: Any
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    executed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def model_payload(self) -> Dict[str, Any]:
        """Return what the model sees as the invocation result."""

        if self.output is not None:
            return self.output
        return {"error": self.error or "Capability failed"}


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "input"
        problems.append(f"{location}: {error.get('msg')}")
    return "Invalid arguments - " + "; ".join(problems)


class CapabilityRegistry:
    """Hold capability declarations and dispatch invocations to them.

    Arguments failing the input contract are rejected before the body runs.
    Bodies report business-rule violations by returning a payload with an
    ``error`` key; they still count as executed.
    """

    def __init__(self) -> None:
        self._capabilities: Dict[str, Capability] = {}

    def register(
        self, name: str, *, description: str, input_model: type[BaseModel]
    ) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            if name in self._capabilities:
                raise ValueError(f"Capability {name!r} is already registered")
            self._capabilities[name] = Capability(
                name=name, description=description, input_model=input_model, handler=handler
            )
            return handler

        return decorator

    def schemas(self) -> List[Dict[str, Any]]:
        return [capability.schema() for capability in self._capabilities.values()]

    def invoke(
        self, name: str, arguments: Any, context: CapabilityContext, *, call_id: str
    ) -> CapabilityInvocation:
        invocation = CapabilityInvocation(call_id=call_id, name=name, arguments=arguments)
        capability = self._capabilities.get(name)
        if capability is None:
            logger.warning("Model requested unknown capability", capability=name)
            invocation.error = f"Unknown capability {name!r}"
            return invocation

        raw = arguments
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except ValueError:
                logger.warning("Capability arguments are not valid JSON", capability=name)
                invocation.error = "Invalid arguments - expected a JSON object"
                return invocation
        if raw is None:
            raw = {}

        try:
            payload = capability.input_model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Capability arguments rejected", capability=name, errors=exc.error_count())
            invocation.error = _format_validation_error(exc)
            return invocation

        invocation.input = payload.model_dump(by_alias=True)
        invocation.executed = True
        try:
            output = capability.handler(payload, context)
        except Exception as exc:
            logger.exception("Capability execution failed", capability=name, call_id=call_id)
            invocation.error = f"{name} failed: {exc}"
            return invocation

        invocation.output = output
        if isinstance(output, dict) and output.get("error"):
            invocation.error = str(output["error"])
        logger.debug(
            "Capability executed",
            capability=name,
            call_id=call_id,
            learner_id=context.learner_id,
            ok=invocation.ok,
        )
        return invocation


__all__ = [
    "Capability",
    "CapabilityContext",
    "CapabilityInvocation",
    "CapabilityRegistry",
]
