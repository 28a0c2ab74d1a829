"""
Inbound events and the closed set of menu actions.

Choice buttons carry a compact ``tag[:param1[:param2]]`` string on the wire.
Each tag maps to exactly one ``Action`` variant with typed fields; an unknown
tag or a malformed parameter is rejected with ``UnsupportedEvent``.
"""
from typing import Annotated, ClassVar, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from exambot.core.errors import UnsupportedEvent


class BaseAction(BaseModel):
    params: ClassVar[Tuple[str, ...]] = ()


# ---------------------------------------------------------------- navigation
class BackToMain(BaseAction):
    action: Literal["back_to_main"] = "back_to_main"


class OpenAdminPanel(BaseAction):
    action: Literal["admin_panel"] = "admin_panel"


class OpenStudentPanel(BaseAction):
    action: Literal["student_panel"] = "student_panel"


class StartAddExam(BaseAction):
    action: Literal["admin_add_exam"] = "admin_add_exam"


class ListCategories(BaseAction):
    action: Literal["student_list_exams"] = "student_list_exams"


class ListExamsInCategory(BaseAction):
    action: Literal["list_exams_in_category"] = "list_exams_in_category"
    params: ClassVar[Tuple[str, ...]] = ("category_name", "page")
    category_name: str
    page: int = Field(default=1, ge=1)


class ShowExam(BaseAction):
    action: Literal["show_exam_confirm"] = "show_exam_confirm"
    params: ClassVar[Tuple[str, ...]] = ("exam_id",)
    exam_id: str


class ConfirmStartExam(BaseAction):
    action: Literal["confirm_start_exam"] = "confirm_start_exam"
    params: ClassVar[Tuple[str, ...]] = ("exam_id",)
    exam_id: str


class Noop(BaseAction):
    action: Literal["noop"] = "noop"


# ---------------------------------------------------------------- authoring
class SetRetake(BaseAction):
    action: Literal["set_retake"] = "set_retake"
    params: ClassVar[Tuple[str, ...]] = ("allow",)
    allow: bool


class SetTime(BaseAction):
    action: Literal["set_time"] = "set_time"
    params: ClassVar[Tuple[str, ...]] = ("wants_time",)
    wants_time: bool


class SelectCategory(BaseAction):
    action: Literal["select_category"] = "select_category"
    params: ClassVar[Tuple[str, ...]] = ("category_name",)
    category_name: str


class FinishQuestions(BaseAction):
    action: Literal["finish_adding_questions"] = "finish_adding_questions"


Action = Annotated[
    Union[
        BackToMain,
        OpenAdminPanel,
        OpenStudentPanel,
        StartAddExam,
        ListCategories,
        ListExamsInCategory,
        ShowExam,
        ConfirmStartExam,
        Noop,
        SetRetake,
        SetTime,
        SelectCategory,
        FinishQuestions,
    ],
    Field(discriminator="action"),
]

_ACTION_ADAPTER = TypeAdapter(Action)

# Legacy alias kept by the admin menu's back button
_TAG_ALIASES = {"back_to_admin_panel": "admin_panel"}

ACTION_TYPES: Dict[str, Type[BaseAction]] = {
    cls.model_fields["action"].default: cls
    for cls in BaseAction.__subclasses__()
}


def _wire(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_action(action: BaseAction) -> str:
    return ":".join([action.action, *(_wire(getattr(action, name)) for name in action.params)])


def decode_action(data: str) -> BaseAction:
    """Parse wire callback data into its typed ``Action`` variant."""
    tag, *values = (data or "").split(":")
    tag = _TAG_ALIASES.get(tag, tag)
    cls = ACTION_TYPES.get(tag)
    if cls is None:
        raise UnsupportedEvent(f"unknown action '{tag}'")
    if len(values) > len(cls.params):
        raise UnsupportedEvent(f"too many parameters for '{tag}'")
    fields = {"action": tag}
    fields.update({name: value for name, value in zip(cls.params, values) if value != ""})
    try:
        return _ACTION_ADAPTER.validate_python(fields)
    except ValidationError as exc:
        raise UnsupportedEvent(f"bad parameters for '{tag}': {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------- inbound events
class _Event(BaseModel):
    user_id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    # Transport delivery id, used to drop redelivered events
    event_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.first_name or self.user_id


class TextMessage(_Event):
    kind: Literal["text"] = "text"
    text: str


class Command(_Event):
    kind: Literal["command"] = "command"
    name: str
    args: str = ""


class ChoiceEvent(_Event):
    kind: Literal["choice"] = "choice"
    action: Action
    message_id: Optional[int] = None
    callback_id: Optional[str] = None


class AnswerSubmitted(_Event):
    kind: Literal["answer"] = "answer"
    # None when the user retracted their vote
    option_index: Optional[int] = None


InboundEvent = Annotated[
    Union[TextMessage, Command, ChoiceEvent, AnswerSubmitted],
    Field(discriminator="kind"),
]
