from __future__ import annotations

from predarena.workflow.decision import HoldDecisionEngine
from predarena.workflow.service import load_engine


def test_default_engine_holds() -> None:
    assert isinstance(load_engine(None), HoldDecisionEngine)
    assert isinstance(load_engine(""), HoldDecisionEngine)


def test_engine_class_is_instantiated() -> None:
    engine = load_engine("predarena.workflow.decision:HoldDecisionEngine")
    assert isinstance(engine, HoldDecisionEngine)
