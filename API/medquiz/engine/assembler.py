"""Partition a course's questions into the ordered units a learner walks through.

Case groups come first, in the order they were loaded, each holding its member
questions sorted by ordering hint (ties keep load order). Every question that
is not a member of a known case group then becomes its own synthetic unit, in
load order, titled from its position among the synthetic units only.

The output depends only on its inputs so that a persisted unit index lands on
the same unit after a resume.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence

from medquiz.engine.types import AnswerableUnit, CaseGroupItem, QuestionItem

SYNTHETIC_UNIT_PREFIX = "single:"


def synthetic_unit_id(question_id: str) -> str:
    return f"{SYNTHETIC_UNIT_PREFIX}{question_id}"


def assemble_units(
    questions: Sequence[QuestionItem],
    case_groups: Iterable[CaseGroupItem] = (),
) -> list[AnswerableUnit]:
    groups = list(case_groups)
    known_group_ids = {group.id for group in groups}

    members: dict[str, list[tuple[int, int, QuestionItem]]] = {group.id: [] for group in groups}
    ungrouped: list[QuestionItem] = []
    for load_position, question in enumerate(questions):
        if question.group_id and question.group_id in known_group_ids:
            members[question.group_id].append((question.order_index, load_position, question))
        else:
            ungrouped.append(question)

    units: list[AnswerableUnit] = []
    for group in groups:
        grouped = sorted(members[group.id], key=lambda entry: (entry[0], entry[1]))
        if not grouped:
            continue
        units.append(
            AnswerableUnit(
                id=group.id,
                title=group.title,
                title_fr=group.title_fr,
                description=group.description,
                description_fr=group.description_fr,
                question_ids=tuple(entry[2].id for entry in grouped),
                is_case_group=True,
            )
        )

    for position, question in enumerate(ungrouped, start=1):
        units.append(
            AnswerableUnit(
                id=synthetic_unit_id(question.id),
                title=f"Question {position}",
                title_fr=f"Question {position}",
                question_ids=(question.id,),
            )
        )
    return units
