"""
Bulk question text format.

A block is the question on its first line, one option per following line and
the 1-based number of the correct option on the last line.  Blocks are
separated by a line containing ``---``::

    2+2?
    3
    4
    5
    2
    ---
    3+3?
    6
    7
    1
"""
from typing import List, Tuple

from exambot.core.errors import MalformedBlock
from exambot.models.session import QuestionSpec

BLOCK_DELIMITER = "---"
MIN_OPTIONS = 2
MAX_OPTIONS = 10


def parse_question_block(text: str) -> QuestionSpec:
    lines = [line.strip() for line in text.strip().split("\n") if line.strip()]
    if len(lines) < 3:
        raise MalformedBlock("a question needs a text line, options and the correct option number", text)

    options = lines[1:-1]
    if not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
        raise MalformedBlock(f"expected {MIN_OPTIONS}-{MAX_OPTIONS} options, got {len(options)}", text)

    try:
        correct = int(lines[-1])
    except ValueError:
        raise MalformedBlock(f"'{lines[-1]}' is not an option number", text) from None
    if not 1 <= correct <= len(options):
        raise MalformedBlock(f"option number {correct} is out of range 1-{len(options)}", text)

    return QuestionSpec(question_text=lines[0], options=options, correct_option_index=correct - 1)


def parse_bulk_questions(text: str) -> Tuple[List[QuestionSpec], int]:
    """Parse every block; returns the accepted questions in input order and the rejected count."""
    accepted: List[QuestionSpec] = []
    rejected = 0
    for block in text.strip().split(BLOCK_DELIMITER):
        if not block.strip():
            continue
        try:
            accepted.append(parse_question_block(block))
        except MalformedBlock:
            rejected += 1
    return accepted, rejected
