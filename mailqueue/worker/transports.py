"""
Delivery transport registry and built-in transports.

A transport hands one message payload to whatever actually delivers it
(an SMTP relay, an HTTP mail API). Delivery is at-least-once, so a
transport may see the same payload more than once after a crash.
"""

import importlib
import logging
import time
from typing import Any, Awaitable, Callable

from mailqueue.types.message import DeliveryResult

logger = logging.getLogger(__name__)

# Type alias for transport functions
Transport = Callable[[dict[str, Any]], Awaitable[DeliveryResult]]

# Transport registry
_transports: dict[str, Transport] = {}


def register_transport(name: str) -> Callable[[Transport], Transport]:
    """
    Decorator to register a transport under a name.

    Args:
        name: The name used in the DELIVERY_TRANSPORT setting.

    Returns:
        Decorator function.

    Example:
        @register_transport("smtp")
        async def smtp_transport(payload: dict) -> DeliveryResult:
            ...
    """
    def decorator(transport: Transport) -> Transport:
        _transports[name] = transport
        logger.debug(f"Registered transport: {name}")
        return transport
    return decorator


def get_transport(name: str) -> Transport:
    """
    Get a registered transport.

    Args:
        name: The transport name.

    Returns:
        The transport function.

    Raises:
        ValueError: If no transport is registered under the name.
    """
    transport = _transports.get(name)
    if transport is None:
        raise ValueError(
            f"Unknown delivery transport {name!r}; "
            f"registered: {', '.join(sorted(_transports))}"
        )
    return transport


def list_transports() -> list[str]:
    """List all registered transport names."""
    return list(_transports.keys())


def resolve_transport(target: str) -> Transport:
    """
    Resolve a DELIVERY_TRANSPORT value.

    Accepts either a registered name ("log") or an import path of the
    form "package.module:function" for transports living outside this
    package.

    Args:
        target: Transport name or import path.

    Returns:
        The transport function.
    """
    if ":" not in target:
        return get_transport(target)

    module_name, _, attr = target.partition(":")
    module = importlib.import_module(module_name)
    transport = getattr(module, attr, None)
    if transport is None or not callable(transport):
        raise ValueError(f"{target!r} does not name a callable transport")
    return transport


# ============================================================================
# Built-in transports
# ============================================================================


@register_transport("log")
async def log_transport(payload: dict[str, Any]) -> DeliveryResult:
    """
    Log the message instead of sending it.

    Useful for development and for deployments without an outbound relay.
    """
    logger.info(
        "Delivered message to log",
        extra={"to": payload.get("to"), "subject": payload.get("subject")}
    )
    return DeliveryResult.ok()


@register_transport("failing")
async def failing_transport(payload: dict[str, Any]) -> DeliveryResult:
    """Transport that always fails, for exercising the retry policy."""
    return DeliveryResult.failed(f"Delivery refused for {payload.get('to')}")


async def deliver(transport: Transport, payload: dict[str, Any]) -> DeliveryResult:
    """
    Run a transport and normalize its outcome.

    Exceptions raised by the transport, and return values that are not a
    DeliveryResult, become failed results.

    Args:
        transport: The transport to call.
        payload: The message payload.

    Returns:
        DeliveryResult with duration_ms filled in.
    """
    start = time.perf_counter()
    try:
        result = await transport(payload)
    except Exception as e:
        logger.exception(
            "Transport raised exception",
            extra={"to": payload.get("to"), "error": str(e)}
        )
        result = DeliveryResult.failed(f"Transport exception: {e}")
    else:
        if not isinstance(result, DeliveryResult):
            logger.error(
                "Transport returned an invalid result",
                extra={"to": payload.get("to"), "result_type": type(result).__name__}
            )
            result = DeliveryResult.failed(
                f"Transport returned {type(result).__name__}, expected DeliveryResult"
            )

    result.duration_ms = (time.perf_counter() - start) * 1000
    return result
