"""
Base classes for Agent Reach tools.

A tool is what the host agent sees: a name, a description, a parameter
schema, and an async body. ``Tool.run`` is the only entry point the host
uses; it validates, applies the timeout, and always returns a ToolResult.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TOOL_NAMESPACE = "agent-reach"
DEFAULT_TOOL_TIMEOUT = 30.0  # seconds

# JSON Schema type name -> accepted Python types
_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class ToolError(Exception):
    """A tool failed in a way the host should see as an error result."""

    def __init__(self, message: str, code: str = "TOOL_ERROR"):
        super().__init__(message)
        self.code = code


class ValidationError(ToolError):
    """Parameters did not match the tool's schema."""

    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(message, code="VALIDATION_ERROR")
        self.param = param


@dataclass
class ToolResult:
    """What the host gets back from every tool call."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "error_code": self.error_code,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def ok(cls, result: Any, **kwargs) -> "ToolResult":
        return cls(success=True, result=result, **kwargs)

    @classmethod
    def fail(cls, error: str, code: str = "ERROR", **kwargs) -> "ToolResult":
        return cls(success=False, error=error, error_code=code, **kwargs)


@dataclass
class ParamSpec:
    """One named tool parameter and its constraints."""

    name: str
    type: str
    description: str = ""
    required: bool = True
    default: Any = None
    enum: Optional[List[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    items: Optional[str] = None  # element type when type == "array"

    def to_json_schema(self) -> dict:
        optional = {
            "description": self.description or None,
            "default": self.default,
            "enum": self.enum or None,
            "minimum": self.min_value,
            "maximum": self.max_value,
            "items": {"type": self.items} if self.items else None,
        }
        schema = {"type": self.type}
        schema.update((key, value) for key, value in optional.items() if value is not None)
        return schema

    def _fail(self, requirement: str) -> ValidationError:
        return ValidationError(f"{self.name} must {requirement}", param=self.name)

    def check(self, value: Any) -> Any:
        """Return ``value`` if it satisfies this spec, else raise ValidationError."""
        # bool is an int subclass; it only counts as a boolean
        if isinstance(value, bool) != (self.type == "boolean") or \
                not isinstance(value, _JSON_TYPES.get(self.type, (object,))):
            raise self._fail(f"be a {self.type}")

        if self.enum and value not in self.enum:
            raise self._fail(f"be one of {self.enum}")
        if self.min_value is not None and value < self.min_value:
            raise self._fail(f"be >= {self.min_value}")
        if self.max_value is not None and value > self.max_value:
            raise self._fail(f"be <= {self.max_value}")

        if self.items:
            item_types = _JSON_TYPES.get(self.items, (object,))
            for item in value:
                if isinstance(item, bool) != (self.items == "boolean") or not isinstance(item, item_types):
                    raise self._fail(f"be an array of {self.items}")
        return value


@dataclass
class ToolSpec:
    """Name, description and parameters of a tool, as advertised to the host."""

    name: str
    description: str = ""
    parameters: List[ParamSpec] = field(default_factory=list)
    timeout: float = DEFAULT_TOOL_TIMEOUT
    category: str = "general"
    namespace: str = TOOL_NAMESPACE

    @property
    def full_name(self) -> str:
        return f"{self.namespace}:{self.name}"

    def to_json_schema(self) -> dict:
        return {
            "type": "object",
            "required": [p.name for p in self.parameters if p.required],
            "properties": {p.name: p.to_json_schema() for p in self.parameters},
        }

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "full_name": self.full_name,
            "description": self.description,
            "category": self.category,
            "parameters": self.to_json_schema(),
        }


class Tool(ABC):
    """
    Base class for tools.

    Subclasses set a class-level ``spec`` and implement ``execute()``,
    which receives validated parameters as keyword arguments and may
    raise ToolError to report a failure.
    """

    spec: ToolSpec

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def full_name(self) -> str:
        return self.spec.full_name

    @property
    def description(self) -> str:
        return self.spec.description

    def validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Check ``params`` against the spec and fill in defaults."""
        by_name = {p.name: p for p in self.spec.parameters}
        for name in sorted(params):
            if name not in by_name:
                raise ValidationError(f"Unknown parameter: {name}", param=name)

        validated = {}
        for name, param in by_name.items():
            value = params.get(name)
            if value is not None:
                validated[name] = param.check(value)
            elif param.default is not None:
                validated[name] = param.default
            elif param.required:
                raise ValidationError(f"Missing required parameter: {name}", param=name)
        return validated

    @abstractmethod
    async def execute(self, **kwargs) -> Any:
        raise NotImplementedError

    async def run(self, params: Dict[str, Any], timeout: Optional[float] = None) -> ToolResult:
        """Validate, execute and wrap the outcome. Never raises."""
        timeout = self.spec.timeout if timeout is None else min(timeout, self.spec.timeout)
        started = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - started) * 1000

        try:
            validated = self.validate(params)
            result = await asyncio.wait_for(self.execute(**validated), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {self.name} timed out after {timeout}s")
            return ToolResult.fail(f"Timed out after {timeout}s", code="TIMEOUT", duration_ms=elapsed_ms())
        except ToolError as e:
            logger.debug(f"Tool {self.name} failed: {e}")
            return ToolResult.fail(str(e), code=e.code, duration_ms=elapsed_ms())
        except Exception as e:
            logger.error(f"Tool {self.name} crashed: {e}", exc_info=True)
            return ToolResult.fail(str(e), code="INTERNAL_ERROR", duration_ms=elapsed_ms())
        return ToolResult.ok(result, duration_ms=elapsed_ms())
