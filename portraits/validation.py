import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portraits.names import clean_markdown

PERSON_NAME_RE = re.compile(r"^[a-zA-Zа-яА-ЯёЁ0-9\s\-'.,()]+$")
QUERY_RE = re.compile(r"^[a-zA-Zа-яА-ЯёЁ0-9\s\-'.,]+$")

Style = Literal["realistic", "artistic", "historical"]


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    person_name: Optional[str] = Field(default=None, alias="personName")
    person_id: Optional[int] = Field(default=None, alias="personId")
    style: Style = "realistic"

    @field_validator("person_name", mode="before")
    @classmethod
    def _clean_name(cls, value):
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("personName must be a string")
        cleaned = clean_markdown(value)
        if len(cleaned) < 2:
            raise ValueError("Имя слишком короткое")
        if len(cleaned) > 200:
            raise ValueError("Имя слишком длинное")
        if not PERSON_NAME_RE.match(cleaned):
            raise ValueError("Имя содержит недопустимые символы")
        return cleaned

    @model_validator(mode="after")
    def _require_person(self):
        if not self.person_name and self.person_id is None:
            raise ValueError("personName or personId is required")
        return self


class PersonQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    q: Optional[str] = Field(default=None, min_length=2, max_length=100)
    era: Optional[str] = Field(default=None, max_length=50)
    category: Optional[str] = Field(default=None, max_length=50)
    limit: int = Field(default=20, ge=1, le=50)
    offset: int = Field(default=0, ge=0)
    use_internet: bool = Field(default=True, alias="useInternet")

    @field_validator("q", mode="before")
    @classmethod
    def _strip_query(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        if not value:
            return None
        if not QUERY_RE.match(value):
            raise ValueError("Запрос содержит недопустимые символы")
        return value


def sanitize_string(value: str, max_length: int = 1000) -> str:
    return (value or "").strip().replace("<", "").replace(">", "")[:max_length]
