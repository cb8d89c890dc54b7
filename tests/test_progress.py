"""Tests for learning status updates."""
from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from app.core.learning_status import InvalidLearningStatus, LearningStatus, coerce_status, is_milestone
from app.db.models import LearnerVocabulary
from app.services.progress import ProgressService
from app.services.vocabulary import VocabularyService
from app.utils.exceptions import ProgressError


@pytest.fixture()
def freund(db_session) -> LearnerVocabulary:
    word = LearnerVocabulary(learner_id="learner-1", term="Freund", translation="friend", learning_status=1)
    db_session.add(word)
    db_session.commit()
    return word


def test_status_update_is_visible_on_next_fetch(db_session, freund):
    result = ProgressService(db_session).apply_status(learner_id="learner-1", term="freund", new_status=3)

    assert result.updated is True
    assert result.matched == 1

    db_session.expire_all()
    items = VocabularyService(db_session).list_backlog(learner_id="learner-1", offset=0, limit=10)
    assert [(item.term, item.learning_status) for item in items] == [("Freund", 3)]


def test_any_valid_status_is_reachable_from_any_other(db_session, freund):
    service = ProgressService(db_session)

    assert service.apply_status(learner_id="learner-1", term="Freund", new_status=5).updated
    assert service.apply_status(learner_id="learner-1", term="Freund", new_status=0).updated

    db_session.expire_all()
    assert db_session.get(LearnerVocabulary, freund.id).learning_status == 0


@pytest.mark.parametrize("value", [-1, 6, True, 2.5, "three", None])
def test_invalid_status_is_reported_not_raised(db_session, freund, value):
    result = ProgressService(db_session).apply_status(learner_id="learner-1", term="Freund", new_status=value)

    assert result.updated is False
    assert "Must be 0-5" in result.error
    db_session.expire_all()
    assert db_session.get(LearnerVocabulary, freund.id).learning_status == 1


def test_unknown_term_is_not_updated(db_session, freund):
    result = ProgressService(db_session).apply_status(learner_id="learner-1", term="Katze", new_status=2)

    assert result.updated is False
    assert result.matched == 0
    assert "Katze" in result.error


def test_terms_are_scoped_to_the_learner(db_session, freund):
    result = ProgressService(db_session).apply_status(learner_id="learner-2", term="Freund", new_status=4)

    assert result.updated is False
    db_session.expire_all()
    assert db_session.get(LearnerVocabulary, freund.id).learning_status == 1


def test_store_failure_is_reported_not_raised(db_session, freund, monkeypatch):
    service = ProgressService(db_session)

    def broken(**kwargs):
        raise OperationalError("UPDATE learner_vocabulary", {}, Exception("database is locked"))

    monkeypatch.setattr(service.vocabulary, "set_status_for_term", broken)

    result = service.apply_status(learner_id="learner-1", term="Freund", new_status=2)

    assert result.updated is False
    assert result.error.startswith("Progress not saved")


def test_update_item_status_returns_previous_and_new(db_session, freund):
    change = ProgressService(db_session).update_item_status(
        item_id=freund.id, learner_id="learner-1", new_status=LearningStatus.REVIEWING
    )

    assert change.previous_status == 1
    assert change.new_status == 4
    assert change.term == "Freund"


def test_update_item_status_requires_ownership(db_session, freund):
    with pytest.raises(ProgressError):
        ProgressService(db_session).update_item_status(
            item_id=freund.id, learner_id="learner-2", new_status=LearningStatus.MASTERED
        )


def test_coerce_status_accepts_integral_values():
    assert coerce_status(3) is LearningStatus.SECOND_CHANCE
    assert coerce_status(5.0) is LearningStatus.MASTERED
    with pytest.raises(InvalidLearningStatus):
        coerce_status(False)


@pytest.mark.parametrize("status,expected", [(0, False), (1, False), (2, False), (3, True), (4, False), (5, True)])
def test_only_second_chance_and_mastered_are_milestones(status, expected):
    assert is_milestone(status) is expected
