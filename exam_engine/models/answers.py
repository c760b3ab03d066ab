"""
Answer payloads, one variant per question type.

Exactly one payload field is valid per variant; the ``type`` tag must match the
question type in the attempt snapshot.
"""
from typing import Annotated, Dict, List, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, field_validator


class SingleChoiceAnswer(BaseModel):
    type: Literal["single_choice"] = "single_choice"
    option_id: str = Field(min_length=1)


class MultipleChoiceAnswer(BaseModel):
    type: Literal["multiple_choice"] = "multiple_choice"
    option_ids: List[str] = Field(default_factory=list)

    @field_validator("option_ids")
    @classmethod
    def dedupe(cls, v: List[str]) -> List[str]:
        return sorted(set(v))


class ShortAnswer(BaseModel):
    type: Literal["short_answer"] = "short_answer"
    text: str = Field(max_length=5000)


Answer = Annotated[
    Union[SingleChoiceAnswer, MultipleChoiceAnswer, ShortAnswer],
    Field(discriminator="type"),
]

_answer_adapter = TypeAdapter(Answer)


def parse_answer(payload: Dict) -> Answer:
    return _answer_adapter.validate_python(payload)


def dump_answer(answer: Answer) -> Dict:
    return answer.model_dump()
