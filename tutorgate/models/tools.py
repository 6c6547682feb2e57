"""
tutorgate/models/tools.py

Tool call request variants, tagged on ``tool``.

Basic tools (learn / build / debug) start a new answer. Follow-up tools work
on a previous answer and must name it through parent_event_id; they are
gated as the advanced category.
"""

from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


CATEGORY_BASIC = "basic"
CATEGORY_ADVANCED = "advanced"

Language = Literal["python", "javascript", "java", "c", "cpp", "sql", "scheme", "other"]
Difficulty = Literal["beginner", "intermediate", "advanced"]


class _ToolRequestBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Short-lived join key shown to the purchaser after claiming a code
    pairing_code: Optional[str] = Field(default=None, max_length=16)

    category: ClassVar[str] = CATEGORY_BASIC

    @property
    def correlation_id(self) -> Optional[str]:
        return None


class LearnRequest(_ToolRequestBase):
    tool: Literal["learn"]
    topic: str = Field(min_length=1, max_length=500)
    language: Language = "python"
    difficulty: Difficulty = "beginner"
    depth: Literal["short", "normal", "deep"] = "normal"


class BuildRequest(_ToolRequestBase):
    tool: Literal["build"]
    problem: str = Field(min_length=1, max_length=4000)
    language: Language = "python"
    constraints: Optional[str] = Field(default=None, max_length=2000)
    test_cases: Optional[str] = Field(default=None, max_length=4000)


class DebugRequest(_ToolRequestBase):
    tool: Literal["debug"]
    code: str = Field(min_length=1, max_length=20000)
    language: Language = "python"
    problem: Optional[str] = Field(default=None, max_length=4000)


class _FollowUpRequest(_ToolRequestBase):
    category: ClassVar[str] = CATEGORY_ADVANCED

    parent_event_id: str = Field(min_length=1, max_length=64)
    previous_context: Optional[str] = Field(default=None, max_length=20000)
    language: Language = "python"

    @property
    def correlation_id(self) -> Optional[str]:
        return self.parent_event_id


class TraceWalkthroughRequest(_FollowUpRequest):
    tool: Literal["trace_walkthrough"]


class ExplainSimpleRequest(_FollowUpRequest):
    tool: Literal["explain_simple"]


class SimilarProblemRequest(_FollowUpRequest):
    tool: Literal["similar_problem"]
    difficulty: Difficulty = "intermediate"


class RealWorldExampleRequest(_FollowUpRequest):
    tool: Literal["real_world_example"]


ToolRequest = Annotated[
    Union[
        LearnRequest,
        BuildRequest,
        DebugRequest,
        TraceWalkthroughRequest,
        ExplainSimpleRequest,
        SimilarProblemRequest,
        RealWorldExampleRequest,
    ],
    Field(discriminator="tool"),
]
