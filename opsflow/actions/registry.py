""" Action types available to ACTION nodes. """
import logging
from typing import Any, Callable, Dict

from ..errors import ActionNotFoundError

logger = logging.getLogger(__name__)

_ACTIONS: Dict[str, Callable] = {}


def register_action(name: str):
    def _wrap(fn):
        _ACTIONS[name] = fn
        return fn
    return _wrap


def get_action(name: str) -> Callable:
    if name not in _ACTIONS:
        raise ActionNotFoundError(f"Action not found: {name}")
    return _ACTIONS[name]


def has_action(name: str) -> bool:
    return name in _ACTIONS


def run_action(action_type: str, params: Dict[str, Any], ctx) -> Any:
    """
    Run a registered action, or hand unknown action types to the gateway so
    host applications can extend the set without registering anything here.
    """
    if has_action(action_type):
        return get_action(action_type)(params, ctx)
    logger.debug("Action %s is not registered, delegating to gateway", action_type)
    return ctx.call(ctx.gateway.run_action, action_type, params)


@register_action("set_variable")
def set_variable(params: Dict[str, Any], ctx) -> Dict[str, Any]:
    """ Assign `value` to the run variable named by `variable`. """
    name = params.get("variable")
    if not name:
        raise ValueError("set_variable requires a 'variable' parameter")
    ctx.bind(name, params.get("value"))
    return {"variable": name, "value": params.get("value")}


@register_action("create_payment_link")
def create_payment_link(params: Dict[str, Any], ctx) -> Any:
    """ Ask the payment provider for a link; the result is usually the URL. """
    if not params.get("invoiceId") and not params.get("amount"):
        raise ValueError("create_payment_link requires an invoiceId or an amount")
    return ctx.call(ctx.gateway.run_action, "create_payment_link", params)


@register_action("create_calendar_event")
def create_calendar_event(params: Dict[str, Any], ctx) -> Any:
    if not params.get("title"):
        raise ValueError("create_calendar_event requires a title")
    return ctx.call(ctx.gateway.run_action, "create_calendar_event", params)
