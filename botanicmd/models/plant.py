"""Plant identification models.

Field names follow the camelCase JSON the AI collaborator returns and that the
collection stores (``plant_data``); Python code uses the snake_case names.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SupportedLanguage(str, Enum):
    """Languages the AI collaborator is asked to respond in."""

    EN = "en"
    PT = "pt"
    ES = "es"
    FR = "fr"
    DE = "de"
    IT = "it"
    ZH = "zh"
    RU = "ru"
    HI = "hi"


LANGUAGE_NAMES: dict[SupportedLanguage, str] = {
    SupportedLanguage.EN: "English",
    SupportedLanguage.PT: "Portuguese (Brazil)",
    SupportedLanguage.ES: "Spanish",
    SupportedLanguage.FR: "French",
    SupportedLanguage.DE: "German",
    SupportedLanguage.IT: "Italian",
    SupportedLanguage.ZH: "Chinese (Simplified)",
    SupportedLanguage.RU: "Russian",
    SupportedLanguage.HI: "Hindi",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class PlantCare(_CamelModel):
    """Structured care instructions."""

    water: str
    light: str
    soil: str
    temperature: str


class PlantHealth(_CamelModel):
    """Health diagnosis. Symptoms and treatment only apply to unhealthy plants."""

    is_healthy: bool
    diagnosis: str
    symptoms: list[str]
    treatment: list[str]

    @property
    def active_symptoms(self) -> list[str]:
        return [] if self.is_healthy else self.symptoms

    @property
    def active_treatment(self) -> list[str]:
        return [] if self.is_healthy else self.treatment


class MedicinalProperties(_CamelModel):
    is_medicinal: bool
    benefits: str
    usage: str


class PlantRecord(_CamelModel):
    """A resolved identification.

    ``id`` and ``saved_at`` stay empty until the record is saved to a
    collection. ``image_url`` and ``language`` are filled in by the client,
    never trusted from the model response.
    """

    common_name: str = Field(min_length=1)
    scientific_name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    fun_fact: str
    toxicity: str
    propagation: str
    watering_frequency_days: int = Field(ge=0)  # 0 = variable
    care: PlantCare
    health: PlantHealth
    medicinal: MedicinalProperties

    image_url: str | None = None
    language: SupportedLanguage | None = None
    id: str | None = None
    saved_at: datetime | None = None

    def identification_fields(self) -> dict:
        """Fields that must survive a save/load round trip unchanged."""
        return self.model_dump(
            include={
                "common_name",
                "scientific_name",
                "description",
                "fun_fact",
                "toxicity",
                "propagation",
                "watering_frequency_days",
                "care",
                "health",
                "medicinal",
            }
        )


class Candidate(_CamelModel):
    """A disambiguation option produced by an ambiguous text query."""

    common_name: str = Field(min_length=1)
    scientific_name: str = Field(min_length=1)
    image_url: str | None = None


class CandidateList(_CamelModel):
    """Envelope the AI collaborator returns for candidate searches."""

    candidates: list[Candidate] = Field(default_factory=list)


class SavedPlant(BaseModel):
    """A collection entry: the record plus the image shown with it."""

    data: PlantRecord
    image: str = ""
