from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MEALS_PER_PLAN = 5
EXERCISES_PER_PLAN = 4
POSES_PER_PLAN = 4


class CamelModel(BaseModel):
    """Records are stored and served with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ActivityLevel(str, Enum):
    sedentary = "sedentary"
    light = "lightly active"
    moderate = "moderately active"
    very = "very active"
    extra = "extra active"


class Goal(str, Enum):
    weight_loss = "Weight Loss"
    maintenance = "Maintenance"
    muscle_gain = "Muscle Gain"
    health_management = "Medical/Health Management"


class DietType(str, Enum):
    vegetarian = "Vegetarian"
    non_vegetarian = "Non-Vegetarian"
    vegan = "Vegan"
    keto = "Keto"
    paleo = "Paleo"


class Persona(str, Enum):
    student = "Student"
    professional = "Working Professional"
    athlete = "Athlete"
    general = "General Wellness"


class UserProfile(CamelModel):
    age: int = Field(ge=1, le=120)
    gender: str = Field(min_length=1, max_length=32)
    weight: float = Field(gt=0, le=500)
    height: float = Field(gt=0, le=300)
    activity_level: ActivityLevel
    conditions: str = ""
    allergies: str = ""
    diet_type: DietType
    persona: Persona
    goal: Goal
    target_calories: Optional[int] = Field(default=None, ge=800, le=6000)
    macro_focus: Optional[str] = Field(default=None, max_length=120)


class Macros(CamelModel):
    protein: float = Field(ge=0)
    carbs: float = Field(ge=0)
    fats: float = Field(ge=0)


class Meal(CamelModel):
    meal: str
    time: str
    suggestions: list[str]
    preparation_steps: list[str]
    nutritional_benefits: str = ""
    prep_time: str
    image_url: Optional[str] = None


class Exercise(CamelModel):
    name: str
    sets: str
    reps: str
    instructions: list[str]
    precautions: str
    image_url: Optional[str] = None


class YogaPose(CamelModel):
    name: str
    duration: str
    instructions: list[str]
    precautions: str
    image_url: Optional[str] = None


class Source(CamelModel):
    title: str
    uri: str


class WellnessPlan(CamelModel):
    daily_calories: float
    macros: Macros
    meal_plan: list[Meal] = Field(min_length=MEALS_PER_PLAN, max_length=MEALS_PER_PLAN)
    workout_plan: list[Exercise] = Field(min_length=EXERCISES_PER_PLAN, max_length=EXERCISES_PER_PLAN)
    yoga_plan: list[YogaPose] = Field(min_length=POSES_PER_PLAN, max_length=POSES_PER_PLAN)
    hydration: str
    lifestyle_tips: list[str]
    medical_advice: str
    disclaimer: str
    sources: list[Source] = Field(default_factory=list)

    def entry_count(self) -> int:
        return len(self.meal_plan) + len(self.workout_plan) + len(self.yoga_plan)


class MacroBreakdown(CamelModel):
    protein_pct: int
    carbs_pct: int
    fats_pct: int
    total_macro_calories: float


def macro_breakdown(macros: Macros) -> MacroBreakdown:
    protein_cal = macros.protein * 4
    carbs_cal = macros.carbs * 4
    fats_cal = macros.fats * 9
    total = protein_cal + carbs_cal + fats_cal
    if total <= 0:
        return MacroBreakdown(protein_pct=0, carbs_pct=0, fats_pct=0, total_macro_calories=0)
    return MacroBreakdown(
        protein_pct=round(protein_cal / total * 100),
        carbs_pct=round(carbs_cal / total * 100),
        fats_pct=round(fats_cal / total * 100),
        total_macro_calories=total,
    )


class RegistryEntry(CamelModel):
    name: str
    password: str
    clinical_id: str
    account_id: Optional[str] = None


class UserAccount(RegistryEntry):
    email: str


class Session(CamelModel):
    email: str
    name: str
    clinical_id: Optional[str] = None
    access_token: Optional[str] = None


class SavedPlanRecord(CamelModel):
    id: str
    timestamp: int
    label: str
    plan: WellnessPlan


class MailboxMessage(CamelModel):
    id: str
    sender: str
    subject: str
    content: str
    timestamp: int
    is_read: bool = False


class NutritionSummary(CamelModel):
    calories: float = Field(ge=0)
    protein: float = Field(ge=0)
    carbs: float = Field(ge=0)
    fats: float = Field(ge=0)


class LoggedFood(CamelModel):
    id: str
    name: str
    timestamp: str


class DailyTaskSheet(CamelModel):
    date: str
    tasks: dict[str, bool] = Field(default_factory=dict)
    logged_foods: list[LoggedFood] = Field(default_factory=list)
    custom_nutrition: Optional[NutritionSummary] = None


class ChatMessage(CamelModel):
    role: Literal["user", "model"]
    text: str
