"""Tool registry, argument validation and concurrent execution of tool calls."""

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from marketplace_assistant.core.base import ToolErrorDetails
from marketplace_assistant.core.errors import ToolSchemaViolation, UnknownToolError
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import (
    ExecutedToolCall,
    ReconstructedToolCall,
    ToolCallFailure,
    ToolExecutionResult,
)
from marketplace_assistant.domain.models.tools import (
    AddToCartArgs,
    ApplyFiltersArgs,
    NavigateArgs,
    RemoveFromCartArgs,
    ViewCartArgs,
)
from marketplace_assistant.domain.services import ToolHandler
from marketplace_assistant.services.filter_intelligence import validate_filters

logger = get_logger(__name__)

UNPARSEABLE_CALL_MESSAGE = "The assistant's request could not be understood."


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    schema: type[BaseModel]
    handler: ToolHandler
    cacheable: bool = True

    def openai_schema(self) -> dict[str, Any]:
        parameters = self.schema.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


def _field_errors(error: PydanticValidationError) -> list[str]:
    errors = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        errors.append(f"{location}: {item['msg']}")
    return errors


class ToolRegistry:
    """Known tools by name. Anything not registered is a hard error."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition) -> None:
        self._tools[definition.name] = definition

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def get(self, name: str, call_id: str | None = None) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name, call_id=call_id) from None

    def enabled(self, enabled_tools: Iterable[str] | None = None) -> list[str]:
        """Registered tool names out of ``enabled_tools`` (all when None)."""
        if enabled_tools is None:
            return self.names
        requested = set(enabled_tools)
        unknown = requested - set(self._tools)
        if unknown:
            logger.warning("Ignoring unregistered tools", tools=sorted(unknown))
        return sorted(requested & set(self._tools))

    def openai_tools(self, enabled_tools: Iterable[str] | None = None) -> list[dict[str, Any]]:
        return [self._tools[name].openai_schema() for name in self.enabled(enabled_tools)]

    def is_cacheable(self, name: str) -> bool:
        definition = self._tools.get(name)
        return definition is not None and definition.cacheable

    def validate(self, call: ReconstructedToolCall, enabled_tools: Iterable[str] | None = None) -> dict[str, Any]:
        """Check a call against its tool's schema.

        Returns the normalized arguments (wire names, unset values dropped).

        Raises:
            UnknownToolError: the tool is not registered or was not offered this turn
            ToolSchemaViolation: one or more arguments are invalid
        """
        definition = self.get(call.function_name, call.call_id)
        if enabled_tools is not None and call.function_name not in set(enabled_tools):
            raise UnknownToolError(call.function_name, call_id=call.call_id)

        try:
            parsed = definition.schema.model_validate(call.arguments)
        except PydanticValidationError as e:
            raise self._violation(call, _field_errors(e)) from e

        arguments = parsed.model_dump(by_alias=True, exclude_none=True)

        if isinstance(parsed, ApplyFiltersArgs):
            filter_params = {k: v for k, v in arguments.items() if k != "reasoning"}
            _, errors = validate_filters(filter_params)
            if errors:
                raise self._violation(call, errors)

        return arguments

    @staticmethod
    def _violation(call: ReconstructedToolCall, field_errors: list[str]) -> ToolSchemaViolation:
        return ToolSchemaViolation(
            message=f"Invalid arguments for '{call.function_name}': {'; '.join(field_errors)}",
            field_errors=field_errors,
            details=ToolErrorDetails(
                source="tool_registry",
                operation="validate_arguments",
                function_name=call.function_name,
                call_id=call.call_id,
                field_errors=field_errors,
            ),
        )


class ToolExecutor:
    """Runs the calls of one turn concurrently; each call succeeds or fails on its own."""

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def execute_all(
        self,
        owner_id: str,
        calls: list[ReconstructedToolCall],
        enabled_tools: Iterable[str] | None = None,
    ) -> list[ExecutedToolCall]:
        if not calls:
            return []
        enabled = list(enabled_tools) if enabled_tools is not None else None
        return list(await asyncio.gather(*(self._execute_one(owner_id, call, enabled) for call in calls)))

    async def _execute_one(
        self,
        owner_id: str,
        call: ReconstructedToolCall,
        enabled_tools: list[str] | None,
    ) -> ExecutedToolCall:
        started = time.perf_counter()

        try:
            arguments = self.registry.validate(call, enabled_tools)
        except ToolSchemaViolation as e:
            logger.warning(
                "Tool call rejected",
                owner_id=owner_id,
                call_id=call.call_id,
                function_name=call.function_name,
                error_code=e.code.value,
                field_errors=e.field_errors,
            )
            return ExecutedToolCall(
                call_id=call.call_id,
                function_name=call.function_name,
                arguments=call.arguments,
                success=False,
                error=e.message,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        handler = self.registry.get(call.function_name).handler
        try:
            outcome = await handler.execute(call.function_name, arguments, owner_id)
        except Exception as e:
            logger.error(
                "Tool handler failed",
                owner_id=owner_id,
                call_id=call.call_id,
                function_name=call.function_name,
                error=str(e),
                exc_info=True,
            )
            outcome = ToolExecutionResult(success=False, error=f"{call.function_name} failed: {e}")

        executed = ExecutedToolCall(
            call_id=call.call_id,
            function_name=call.function_name,
            arguments=arguments,
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info(
            "Tool call executed",
            owner_id=owner_id,
            call_id=executed.call_id,
            function_name=executed.function_name,
            success=executed.success,
            duration_ms=round(executed.duration_ms, 2),
        )
        return executed

    @staticmethod
    def unparseable(failure: ToolCallFailure) -> ExecutedToolCall:
        """Tool-result entry for a call whose arguments could not be parsed."""
        return ExecutedToolCall(
            call_id=failure.call_id or f"call_{failure.call_index}",
            function_name=failure.function_name or "unknown",
            success=False,
            error=f"{UNPARSEABLE_CALL_MESSAGE} ({failure.reason})",
        )


class MarketplaceToolHandler:
    """Stand-in for the storefront's own handlers.

    Filter and navigation calls return the client-side action to perform.
    Carts are kept in memory per owner.
    """

    def __init__(self) -> None:
        self._carts: dict[str, dict[str, int]] = {}

    async def execute(self, function_name: str, arguments: dict[str, Any], owner_id: str) -> ToolExecutionResult:
        if function_name == "applyFilters":
            filters = {k: v for k, v in arguments.items() if k != "reasoning"}
            return ToolExecutionResult(
                success=True,
                result={
                    "action": "filter_applied",
                    "filters": filters,
                    "url": f"/publishers?{urlencode(filters)}",
                    "message": "Applied filters: " + ", ".join(f"{k}={v}" for k, v in filters.items()),
                },
            )

        if function_name == "navigateTo":
            return ToolExecutionResult(
                success=True,
                result={"action": "navigate", "route": arguments["route"], "message": f"Navigating to {arguments['route']}"},
            )

        cart = self._carts.setdefault(owner_id, {})

        if function_name == "addToCart":
            product_id, quantity = arguments["productId"], arguments.get("quantity", 1)
            cart[product_id] = cart.get(product_id, 0) + quantity
            return ToolExecutionResult(
                success=True,
                result={
                    "action": "cart_add",
                    "productId": product_id,
                    "quantity": quantity,
                    "totalItems": sum(cart.values()),
                    "message": f"Added {quantity}x product {product_id} to cart",
                },
            )

        if function_name == "removeFromCart":
            product_id = arguments["productId"]
            if product_id not in cart:
                return ToolExecutionResult(success=False, error=f"Product {product_id} is not in the cart")
            del cart[product_id]
            return ToolExecutionResult(
                success=True,
                result={"action": "cart_remove", "productId": product_id, "totalItems": sum(cart.values())},
            )

        if function_name == "viewCart":
            items = [{"productId": pid, "quantity": qty} for pid, qty in sorted(cart.items())]
            return ToolExecutionResult(
                success=True,
                result={"action": "cart_view", "items": items, "totalItems": sum(cart.values())},
            )

        return ToolExecutionResult(success=False, error=f"No handler for '{function_name}'")


def build_default_registry(handler: ToolHandler | None = None) -> ToolRegistry:
    """The five marketplace tools, all served by ``handler``."""
    handler = handler or MarketplaceToolHandler()
    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="applyFilters",
            description=(
                "Apply publisher search filters (domain authority, spam score, price, traffic, "
                "niche, country, language, backlink nature, availability)."
            ),
            schema=ApplyFiltersArgs,
            handler=handler,
        )
    )
    registry.register(
        ToolDefinition(
            name="navigateTo",
            description="Navigate the user to a page of the marketplace, e.g. /publishers or /cart.",
            schema=NavigateArgs,
            handler=handler,
        )
    )
    registry.register(
        ToolDefinition(
            name="addToCart",
            description="Add a product to the user's cart.",
            schema=AddToCartArgs,
            handler=handler,
            cacheable=False,
        )
    )
    registry.register(
        ToolDefinition(
            name="removeFromCart",
            description="Remove a product from the user's cart.",
            schema=RemoveFromCartArgs,
            handler=handler,
            cacheable=False,
        )
    )
    registry.register(
        ToolDefinition(
            name="viewCart",
            description="Show the contents of the user's cart.",
            schema=ViewCartArgs,
            handler=handler,
            cacheable=False,
        )
    )
    return registry
