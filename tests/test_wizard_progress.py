from __future__ import annotations

import unittest
from datetime import datetime, timezone

from wizard_progress import ProgressStateError, ProgressStateMachine, StepConfig, StepStatus
from wizard_validation import StepValidation, ValidationRegistry, agreement_registry, validate_source


def _flag_registry(total: int) -> ValidationRegistry:
    """
    Step i is valid when data["ok"][i] is truthy.
    """

    def make(i: int):
        def validator(data):
            ok = bool((data.get("ok") or {}).get(i))
            return StepValidation(is_valid=ok, errors=() if ok else (f"step {i} not ok",))

        return validator

    return ValidationRegistry({i: make(i) for i in range(total)})


class TestProgressStateMachine(unittest.TestCase):
    def test_example_two_step_flow(self) -> None:
        registry = ValidationRegistry(
            {
                0: validate_source,
                1: lambda data: StepValidation(is_valid=bool(data.get("step1")), errors=() if data.get("step1") else ("Step 1 is empty",)),
            }
        )
        machine = ProgressStateMachine(2, registry)
        steps = (StepConfig("source", "Source"), StepConfig("terms", "Terms"))

        first = machine.validate_step(0, {"source": None})
        self.assertFalse(first.is_valid)
        self.assertEqual(first.errors, ("Please select an agreement source",))

        self.assertTrue(machine.validate_step(0, {"source": "direct"}).is_valid)
        machine.mark_step_complete(0)
        machine.set_current_step(1)
        machine.validate_step(1, {"source": "direct"})

        result = machine.check_submission(steps)
        self.assertFalse(result.ok)
        self.assertEqual(result.incomplete_steps, ((1, "Terms"),))
        self.assertIn("Terms", result.message)

    def test_complete_only_after_passing_validation(self) -> None:
        machine = ProgressStateMachine(3, _flag_registry(3))
        with self.assertRaises(ProgressStateError):
            machine.mark_step_complete(0)
        machine.validate_step(0, {"ok": {0: False}})
        with self.assertRaises(ProgressStateError):
            machine.mark_step_complete(0)
        self.assertEqual(machine.get_step_status(0), StepStatus.HAS_ERRORS)
        machine.validate_step(0, {"ok": {0: True}})
        self.assertEqual(machine.get_step_status(0), StepStatus.COMPLETE)

    def test_modification_invalidates_completion(self) -> None:
        machine = ProgressStateMachine(3, _flag_registry(3))
        machine.validate_step(1, {"ok": {1: True}})
        at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        machine.note_modified(1, at=at)
        self.assertEqual(machine.get_step_status(1), StepStatus.INCOMPLETE)
        self.assertEqual(machine.state.last_modified_step, 1)
        self.assertEqual(machine.state.last_modified_at, at)
        with self.assertRaises(ProgressStateError):
            machine.mark_step_complete(1)

    def test_navigation_is_never_gated(self) -> None:
        machine = ProgressStateMachine(4, _flag_registry(4))
        machine.validate_step(0, {})
        for step in (3, 1, 0, 2):
            machine.set_current_step(step)
            self.assertEqual(machine.current_step, step)
        self.assertEqual(machine.get_step_status(3), StepStatus.INCOMPLETE)
        with self.assertRaises(ProgressStateError):
            machine.set_current_step(4)

    def test_percentage_rounds(self) -> None:
        machine = ProgressStateMachine(9, _flag_registry(9))
        for i in range(3):
            machine.validate_step(i, {"ok": {i: True}})
        self.assertEqual(machine.get_progress_percentage(), 33)
        machine.validate_step(3, {"ok": {3: True}})
        machine.validate_step(4, {"ok": {4: True}})
        machine.validate_step(5, {"ok": {5: True}})
        self.assertEqual(machine.get_progress_percentage(), 67)

    def test_submission_names_every_incomplete_step(self) -> None:
        registry = agreement_registry()
        machine = ProgressStateMachine(9, registry)
        steps = tuple(StepConfig(f"s{i}", f"Step {i}") for i in range(9))
        machine.validate_step(0, {"source": "direct"})
        result = machine.check_submission(steps)
        self.assertFalse(result.ok)
        self.assertEqual([i for i, _ in result.incomplete_steps], list(range(1, 9)))
        with self.assertRaises(ProgressStateError):
            machine.check_submission(steps[:3])

    def test_submission_succeeds_when_all_complete(self) -> None:
        machine = ProgressStateMachine(2, _flag_registry(2))
        machine.validate_step(0, {"ok": {0: True}})
        machine.validate_step(1, {"ok": {1: True}})
        result = machine.check_submission((StepConfig("a", "A"), StepConfig("b", "B")))
        self.assertTrue(result.ok)
        self.assertEqual(machine.next_incomplete_step(), None)

    def test_next_incomplete_wraps_around(self) -> None:
        machine = ProgressStateMachine(4, _flag_registry(4))
        machine.validate_step(0, {"ok": {0: True}})
        machine.validate_step(3, {"ok": {3: True}})
        machine.set_current_step(2)
        self.assertEqual(machine.next_incomplete_step(), 1)
        self.assertEqual(machine.next_incomplete_step(after=0), 1)

    def test_can_proceed_tracks_current_step(self) -> None:
        machine = ProgressStateMachine(2, _flag_registry(2))
        self.assertFalse(machine.can_proceed)
        machine.validate_step(0, {"ok": {0: True}})
        self.assertTrue(machine.can_proceed)
        machine.set_current_step(1)
        self.assertFalse(machine.can_proceed)

    def test_summary(self) -> None:
        machine = ProgressStateMachine(3, _flag_registry(3))
        machine.validate_step(0, {"ok": {0: True}})
        machine.validate_step(1, {})
        summary = machine.get_progress_summary()
        self.assertEqual((summary.completed, summary.visited, summary.total), (1, 2, 3))
        self.assertTrue(summary.has_errors)
        self.assertFalse(summary.is_complete)

    def test_reset_and_clear(self) -> None:
        machine = ProgressStateMachine(2, _flag_registry(2))
        machine.validate_step(0, {"ok": {0: True}})
        machine.reset_step_status(0)
        self.assertEqual(machine.get_step_status(0), StepStatus.NOT_VISITED)
        machine.validate_step(1, {"ok": {1: True}})
        machine.clear()
        self.assertEqual(machine.completed_steps(), [])

    def test_update_step_status_to_complete_requires_validity(self) -> None:
        machine = ProgressStateMachine(2, _flag_registry(2))
        with self.assertRaises(ProgressStateError):
            machine.update_step_status(0, StepStatus.COMPLETE)
        machine.update_step_status(0, StepStatus.HAS_ERRORS)
        self.assertEqual(machine.get_step_status(0), StepStatus.HAS_ERRORS)

    def test_round_trip_keeps_progress(self) -> None:
        machine = ProgressStateMachine(3, _flag_registry(3))
        machine.validate_step(0, {"ok": {0: True}})
        machine.set_current_step(2)
        machine.record_saved(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
        raw = machine.to_dict()
        self.assertEqual(raw["currentStep"], 2)
        self.assertEqual(raw["statuses"]["0"], "complete")

        restored = ProgressStateMachine.from_dict(raw, 3, _flag_registry(3))
        self.assertEqual(restored.current_step, 2)
        self.assertEqual(restored.get_step_status(0), StepStatus.COMPLETE)
        self.assertEqual(restored.state.last_saved_at, machine.state.last_saved_at)

    def test_restored_complete_without_validity_is_demoted(self) -> None:
        raw = {"currentStep": 7, "statuses": {"0": "complete", "1": "bogus"}, "lastValidity": {}}
        restored = ProgressStateMachine.from_dict(raw, 2, _flag_registry(2))
        self.assertEqual(restored.current_step, 1)
        self.assertEqual(restored.get_step_status(0), StepStatus.INCOMPLETE)
        self.assertEqual(restored.get_step_status(1), StepStatus.NOT_VISITED)

    def test_total_steps_must_be_positive(self) -> None:
        with self.assertRaises(ProgressStateError):
            ProgressStateMachine(0, _flag_registry(1))


if __name__ == "__main__":
    unittest.main()
