from dataclasses import dataclass


@dataclass
class PersonInfo:
    name: str
    description: str = ""
    era: str = "Unknown"
    appearance: str = "Historical figure"
    style: str = "realistic portrait"
    country: str | None = None
    birth_year: int | None = None
    death_year: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> "PersonInfo":
        return cls(
            name=row["name"],
            description=row.get("description") or "",
            era=row.get("era") or "Unknown",
            appearance=row.get("appearance") or "Historical figure",
            country=row.get("country"),
            birth_year=row.get("birth_year"),
            death_year=row.get("death_year"),
        )


@dataclass
class ImageResult:
    provider: str
    data: bytes | None = None
    mime_type: str = "image/png"
    url: str | None = None


@dataclass
class Suggestion:
    name: str
    identifier: str | None = None
    era: str | None = None
    country: str | None = None
    source: str = "internet"
    person_id: int | None = None

    def as_dict(self) -> dict:
        return {
            "id": self.person_id,
            "name": self.name,
            "identifier": self.identifier,
            "era": self.era,
            "country": self.country,
            "source": self.source,
        }
