"""Tool dispatcher: routes model function calls to the scheduling engine."""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from receptionist.services.realtime.model_session import (
    CreateResponse,
    FunctionCall,
    FunctionOutput,
    ModelDirective,
)
from receptionist.services.relay.state import CallOutcome, CallSession
from receptionist.services.scheduling import SchedulingEngine

logger = structlog.get_logger()

TRANSFER_MESSAGE = "Transferring to human staff. Please hold."


class CheckAvailabilityArgs(BaseModel):
    date: str


class BookAppointmentArgs(BaseModel):
    customer_name: str
    customer_phone: str
    date: str
    time: str
    service: str | None = None
    notes: str | None = None


class CancelAppointmentArgs(BaseModel):
    customer_phone: str
    date: str | None = None


class TransferToHumanArgs(BaseModel):
    reason: str


def parse_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode the model's JSON argument string.

    Raises:
        ValueError: If the arguments are not a JSON object
    """
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    decoded = json.loads(arguments)
    if not isinstance(decoded, dict):
        raise ValueError("Arguments must be a JSON object")
    return decoded


class ToolDispatcher:
    """Executes function calls for one call session.

    Each function call is dispatched in its own task by the orchestrator;
    results are correlated back to the model purely by call id.
    """

    def __init__(
        self,
        engine: SchedulingEngine,
        call_session: CallSession,
        submit: Callable[[ModelDirective], Awaitable[None]],
    ) -> None:
        self.engine = engine
        self.call_session = call_session
        self.submit = submit
        self.logger = logger.bind(
            component="tool_dispatcher",
            session_id=str(call_session.session_id),
            tenant_id=call_session.tenant_id,
        )
        self._handlers: dict[str, tuple[type[BaseModel], Callable[[Any], Awaitable[dict[str, Any]]]]] = {
            "check_availability": (CheckAvailabilityArgs, self._check_availability),
            "book_appointment": (BookAppointmentArgs, self._book_appointment),
            "cancel_appointment": (CancelAppointmentArgs, self._cancel_appointment),
            "transfer_to_human": (TransferToHumanArgs, self._transfer_to_human),
        }

    async def dispatch(self, call: FunctionCall) -> dict[str, Any]:
        """Run one function call and hand its result back to the model.

        The function output and the follow-up response request are submitted
        back to back so the model resumes speaking with the result in context.
        """
        try:
            arguments = parse_arguments(call.arguments)
        except ValueError as e:
            self.logger.warning("tool_arguments_invalid", call_id=call.call_id, tool_name=call.name)
            arguments = {"raw": call.arguments}
            result: dict[str, Any] = {"success": False, "error": f"Invalid arguments: {e}"}
        else:
            result = await self.execute(call.name, arguments)

        self.call_session.log_tool(call.call_id, call.name, arguments, result)

        await self.submit(FunctionOutput(call_id=call.call_id, output=result))
        await self.submit(CreateResponse())

        self.logger.info(
            "function_call_completed",
            call_id=call.call_id,
            tool_name=call.name,
            success=result.get("success"),
        )
        return result

    async def execute(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute a tool by name.

        Returns:
            Tool result; failures are reported as ``{"success": False, "error": ...}``
        """
        handler = self._handlers.get(name)
        if handler is None:
            self.logger.warning("unknown_tool", tool_name=name)
            return {"success": False, "error": f"Unknown tool: {name}"}

        args_model, func = handler
        try:
            args = args_model.model_validate(arguments)
        except ValidationError as e:
            self.logger.warning("tool_arguments_invalid", tool_name=name, errors=e.errors())
            return {"success": False, "error": f"Invalid arguments for {name}: {e.error_count()} error(s)"}

        self.logger.info("executing_tool", tool_name=name)
        try:
            return await func(args)
        except Exception:
            self.logger.exception("tool_execution_failed", tool_name=name)
            return {"success": False, "error": f"{name} failed"}

    async def _check_availability(self, args: CheckAvailabilityArgs) -> dict[str, Any]:
        result = await self.engine.check_availability(args.date)
        return result.model_dump(mode="json")

    async def _book_appointment(self, args: BookAppointmentArgs) -> dict[str, Any]:
        result = await self.engine.book_appointment(
            customer_name=args.customer_name,
            customer_phone=args.customer_phone,
            date=args.date,
            time=args.time,
            service=args.service,
            notes=args.notes,
            call_record_id=self.call_session.call_record_id,
        )
        if result.success:
            self.call_session.set_outcome(CallOutcome.BOOKED)
        return result.model_dump(mode="json")

    async def _cancel_appointment(self, args: CancelAppointmentArgs) -> dict[str, Any]:
        result = await self.engine.cancel_appointment(customer_phone=args.customer_phone, date=args.date)
        if result.success:
            self.call_session.set_outcome(CallOutcome.CANCELLED)
        return result.model_dump(mode="json")

    async def _transfer_to_human(self, args: TransferToHumanArgs) -> dict[str, Any]:
        self.call_session.set_outcome(CallOutcome.TRANSFERRED)
        self.logger.info("transfer_requested", reason=args.reason)

        result: dict[str, Any] = {"success": True, "message": TRANSFER_MESSAGE, "reason": args.reason}
        transfer_number = self.engine.tenant.transfer_number
        if transfer_number:
            result["transfer_to"] = transfer_number
        return result
