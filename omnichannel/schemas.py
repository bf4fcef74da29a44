from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    # Accept both the camelCase wire names and the python field names.
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_Body):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    code: Optional[str] = None


class TwoFactorActivate(_Body):
    token: str = Field(..., min_length=1)


class CompanySettings(_Body):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class MessageSettings(_Body):
    welcome: Optional[str] = None
    outside_hours: Optional[str] = Field(None, alias="outsideHours")
    invalid_option: Optional[str] = Field(None, alias="invalidOption")
    transfer_to_human: Optional[str] = Field(None, alias="transferToHuman")


class BotBehaviour(_Body):
    catalog_label: Optional[str] = Field(None, alias="catalogLabel")


class BotSettingsUpdate(_Body):
    company: Optional[CompanySettings] = None
    messages: Optional[MessageSettings] = None
    ai: Optional[dict[str, Any]] = None
    bot: Optional[BotBehaviour] = None
    menus: Optional[list[Any]] = None


class CourseUpdate(_Body):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: Optional[str] = None
    workload: Optional[str] = None
    price: Optional[float] = None
    active: bool = True


class FAQQuestionCreate(_Body):
    category_id: str = Field(..., min_length=1, alias="categoryId")
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    keywords: list[str] = Field(default_factory=list)


class KeywordCreate(_Body):
    keyword: str = Field(..., min_length=1)
    target_state: str = Field(..., min_length=1, alias="targetState")


class KnowledgeUpsert(_Body):
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    category: Optional[str] = None
    active: bool = True


class ModuleToggle(_Body):
    module: str = Field(..., min_length=1)
    enabled: bool = False


class InstanceCreate(_Body):
    name: str = Field(..., min_length=1)
