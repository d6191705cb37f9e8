"""Function schema exposed to the conversational model."""

from typing import Any


def get_tool_definitions() -> list[dict[str, Any]]:
    """Get OpenAI function calling tool definitions.

    Returns:
        List of tool definitions in the flat Realtime API format
    """
    return [
        {
            "type": "function",
            "name": "check_availability",
            "description": "Check available appointment slots for a given date",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {
                        "type": "string",
                        "description": "The date to check availability for (YYYY-MM-DD format)",
                    },
                },
                "required": ["date"],
            },
        },
        {
            "type": "function",
            "name": "book_appointment",
            "description": "Book an appointment for a caller. Always confirm the date and time with the caller first.",
            "parameters": {
                "type": "object",
                "properties": {
                    "customer_name": {
                        "type": "string",
                        "description": "Name of the customer",
                    },
                    "customer_phone": {
                        "type": "string",
                        "description": "Phone number of the customer",
                    },
                    "date": {
                        "type": "string",
                        "description": "Appointment date (YYYY-MM-DD)",
                    },
                    "time": {
                        "type": "string",
                        "description": "Appointment time (HH:MM in 24hr format)",
                    },
                    "service": {
                        "type": "string",
                        "description": "Service requested (optional)",
                    },
                    "notes": {
                        "type": "string",
                        "description": "Additional notes (optional)",
                    },
                },
                "required": ["customer_name", "customer_phone", "date", "time"],
            },
        },
        {
            "type": "function",
            "name": "cancel_appointment",
            "description": "Cancel an existing appointment",
            "parameters": {
                "type": "object",
                "properties": {
                    "customer_phone": {
                        "type": "string",
                        "description": "Phone number used for the booking",
                    },
                    "date": {
                        "type": "string",
                        "description": "Date of appointment to cancel (YYYY-MM-DD)",
                    },
                },
                "required": ["customer_phone"],
            },
        },
        {
            "type": "function",
            "name": "transfer_to_human",
            "description": "Transfer the call to a human staff member",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Reason for transfer",
                    },
                },
                "required": ["reason"],
            },
        },
    ]
