"""Built-in bot configuration used when a tenant has not saved its own."""

from __future__ import annotations

import copy
import json
from typing import Any, Optional

DEFAULT_CATALOG_LABEL = "Courses"

DEFAULT_BOT_CONFIG: dict[str, Any] = {
    "company": {
        "name": "Nyvlo",
        "address": "",
        "phone": "",
        "email": "",
        "website": "",
    },
    "businessHours": {
        "weekdays": {"start": "08:00", "end": "18:00"},
        "saturday": {"start": "08:00", "end": "12:00"},
        "sunday": None,
    },
    "bot": {
        "sessionTimeout": 30,
        "maxReconnectAttempts": 5,
        "messageDelay": 1000,
        "broadcastRateLimit": 30,
        "catalogLabel": DEFAULT_CATALOG_LABEL,
    },
    "ai": {
        "provider": "groq",
        "model": "llama-3.1-8b-instant",
        "maxTokens": 500,
        "temperature": 0.7,
        "enabled": False,
    },
    "messages": {
        "welcome": "👋 Hello! Welcome to *{company}*!\n\nI am the virtual assistant and I am here to help.",
        "goodbye": "Thanks for getting in touch! 👋",
        "invalidOption": "❌ Invalid option. Please choose one of the available options.",
        "outsideHours": "⏰ Our opening hours are:\n{hours}\n\nLeave a message and we will get back to you.",
        "transferToHuman": "👤 Please wait, I am transferring you to one of our agents...",
        "noHumanAvailable": "😔 No agents are available right now. Please leave a message.",
    },
    "menus": [],
    "courses": [],
    "faq": {"categories": [], "questions": []},
}


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_BOT_CONFIG)


def _json_or(raw: Optional[str], fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return fallback


def merge_settings(settings: Optional[dict]) -> dict[str, Any]:
    """Overlay a bot_settings row on the defaults. Empty columns keep the default value."""
    config = default_config()
    if not settings:
        return config
    company = config["company"]
    company["name"] = settings.get("company_name") or company["name"]
    company["address"] = settings.get("business_address") or company["address"]
    company["phone"] = settings.get("company_phone") or company["phone"]
    company["email"] = settings.get("company_email") or company["email"]

    messages = config["messages"]
    messages["welcome"] = settings.get("welcome_message") or messages["welcome"]
    messages["outsideHours"] = settings.get("outside_hours_message") or messages["outsideHours"]
    messages["invalidOption"] = settings.get("invalid_option_message") or messages["invalidOption"]
    messages["transferToHuman"] = settings.get("transfer_message") or messages["transferToHuman"]

    config["ai"] = _json_or(settings.get("ai_config"), config["ai"])
    config["menus"] = _json_or(settings.get("menus"), config["menus"])
    config["bot"]["catalogLabel"] = settings.get("catalog_label") or DEFAULT_CATALOG_LABEL
    return config
