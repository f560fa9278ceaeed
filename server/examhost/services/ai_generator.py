"""
AI Question Drafting.

Asks the text-generation provider for one question about a topic, then
treats the reply as untrusted: strip code fences, parse JSON, validate.
"""
import json
import logging

from pydantic import ValidationError

from examhost.errors import AIDraftError
from examhost.models import QuestionType
from examhost.schemas import GeneratedQuestion
from examhost.services.llm_service import TextGenerationService
from examhost.services.prompt_management import get_prompt

logger = logging.getLogger(__name__)


def build_prompt(topic: str, question_type: QuestionType) -> str:
    return get_prompt("question_draft", question_type.value, topic=topic.strip())


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    result_text = text.strip()
    if result_text.startswith("```json"):
        result_text = result_text[7:]
    if result_text.startswith("```"):
        result_text = result_text[3:]
    if result_text.endswith("```"):
        result_text = result_text[:-3]
    return result_text.strip()


def parse_draft(text: str, question_type: QuestionType) -> GeneratedQuestion:
    """
    Turn a provider reply into a GeneratedQuestion.

    Non-JSON replies become a plain question for ``text`` and ``file_upload``
    and an error for ``multiple_choice``.
    """
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError:
        logger.warning("AI response was not JSON (type=%s): %.200s", question_type.value, text)
        if question_type != QuestionType.MULTIPLE_CHOICE and text.strip():
            return GeneratedQuestion(question_text=text.strip())
        raise AIDraftError("AI response was not in the expected JSON format.")

    if not isinstance(data, dict) or not data.get("question_text"):
        raise AIDraftError("AI response did not contain question text.")

    try:
        draft = GeneratedQuestion.model_validate(data)
    except ValidationError as e:
        logger.warning("AI response failed validation: %s", e)
        raise AIDraftError("AI response was not formatted correctly.")

    if question_type == QuestionType.MULTIPLE_CHOICE:
        if not draft.options or not any(option.is_correct for option in draft.options):
            raise AIDraftError(
                "AI response for multiple choice was not formatted correctly or lacked a correct answer."
            )
    else:
        draft.options = None

    return draft


def draft_question(topic: str, question_type: QuestionType, llm: TextGenerationService) -> GeneratedQuestion:
    """Generate and validate one question draft about ``topic``."""
    if not topic or not topic.strip():
        raise AIDraftError("A topic is required to generate a question.")
    prompt = build_prompt(topic, question_type)
    text = llm.generate(prompt)
    return parse_draft(text, question_type)
