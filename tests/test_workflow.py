"""Tests for the refinement controller and its stage machine."""

import json
import unittest

from diffsage.config import EngineConfig, FastPathConfig
from diffsage.models import AnalysisMode, ExecutionMode, PromptStage
from diffsage.stage_executor import PromptOnlyStrategy
from diffsage.workflow import (
    RefinementController,
    WorkflowStage,
    WorkflowState,
    is_fast_path,
    make_controller,
    next_stage,
)
from fakes import (
    DEFAULT_RESPONSES,
    SECRET_DIFF,
    THREE_FILE_DIFF,
    ScriptedCapability,
    context_for,
    many_file_diff,
    unavailable,
)


def evaluation(score: int, missing=()) -> str:
    return json.dumps({"clarity_score": score, "missing_information": list(missing)})


def run_execute(diff, capability, config=None, **context_kwargs):
    config = config or EngineConfig()
    controller = make_controller(config, ExecutionMode.EXECUTE, capability, identifier=capability.identifier)
    result = controller.run(context_for(diff, **context_kwargs))
    return result, controller.last_state


SLOW_PATH_DIFF = many_file_diff(6)


class TestNextStage(unittest.TestCase):
    def setUp(self):
        self.config = EngineConfig(max_iterations=2, clarity_threshold=80)

    def test_linear_prefix(self):
        state = WorkflowState()
        order = [WorkflowStage.INIT]
        while order[-1] is not WorkflowStage.SUMMARIZE:
            order.append(next_stage(order[-1], state, self.config))
        self.assertEqual(order, [
            WorkflowStage.INIT,
            WorkflowStage.ANALYZE_FILES,
            WorkflowStage.DETECT_RISKS,
            WorkflowStage.SCORE_COMPLEXITY,
            WorkflowStage.SUMMARIZE,
        ])

    def test_low_clarity_refines_until_bound(self):
        state = WorkflowState(clarity_score=10)
        self.assertIs(next_stage(WorkflowStage.EVALUATE, state, self.config), WorkflowStage.REFINE)
        state.iteration = 2
        self.assertIs(next_stage(WorkflowStage.EVALUATE, state, self.config), WorkflowStage.FINALIZE)

    def test_clear_summary_finalizes(self):
        state = WorkflowState(clarity_score=80)
        self.assertIs(next_stage(WorkflowStage.EVALUATE, state, self.config), WorkflowStage.FINALIZE)

    def test_refine_returns_to_summarize(self):
        self.assertIs(next_stage(WorkflowStage.REFINE, WorkflowState(), self.config), WorkflowStage.SUMMARIZE)

    def test_fast_path_skips_evaluation(self):
        state = WorkflowState(skip_evaluation=True)
        self.assertIs(next_stage(WorkflowStage.SUMMARIZE, state, self.config), WorkflowStage.FINALIZE)

    def test_budget_exhaustion_finalizes_from_anywhere(self):
        state = WorkflowState(budget_exhausted=True)
        for stage in (WorkflowStage.INIT, WorkflowStage.ANALYZE_FILES, WorkflowStage.EVALUATE):
            self.assertIs(next_stage(stage, state, self.config), WorkflowStage.FINALIZE)

    def test_prompt_only_never_refines(self):
        state = WorkflowState(clarity_score=0)
        self.assertIs(
            next_stage(WorkflowStage.EVALUATE, state, self.config, ExecutionMode.PROMPT_ONLY),
            WorkflowStage.FINALIZE,
        )

    def test_finalize_is_terminal(self):
        with self.assertRaises(ValueError):
            next_stage(WorkflowStage.FINALIZE, WorkflowState(), self.config)

    def test_fast_path_needs_both_limits(self):
        config = EngineConfig(fast_path=FastPathConfig(max_files=5, max_diff_chars=50))
        self.assertFalse(is_fast_path(context_for(SECRET_DIFF), config))
        self.assertTrue(is_fast_path(context_for(SECRET_DIFF), EngineConfig()))
        self.assertFalse(is_fast_path(context_for(SLOW_PATH_DIFF), EngineConfig()))


class TestFastPath(unittest.TestCase):
    def test_small_diff_skips_self_evaluation(self):
        capability = ScriptedCapability()
        result, state = run_execute(SECRET_DIFF, capability)

        self.assertTrue(result.fast_path)
        self.assertEqual(capability.calls_for(PromptStage.SELF_REFINEMENT), [])
        self.assertNotIn(WorkflowStage.EVALUATE, state.history)
        self.assertEqual(result.iterations, 0)
        self.assertIsNone(result.clarity_score)
        self.assertEqual(result.summary, "Adds a feature")
        self.assertEqual(result.complexity_score, 1)
        self.assertEqual(len(result.file_analyses), 1)

        critical = result.critical_findings
        self.assertEqual(len(critical), 1)
        self.assertEqual(critical[0].category, "security")
        self.assertEqual(critical[0].file, "app.py")


class TestRefinementLoop(unittest.TestCase):
    def test_never_improving_clarity_stops_at_max_iterations(self):
        capability = ScriptedCapability(responses={PromptStage.SELF_REFINEMENT: evaluation(40, ["Why"])})
        result, state = run_execute(SLOW_PATH_DIFF, capability, EngineConfig(max_iterations=3))

        self.assertEqual(result.iterations, 3)
        self.assertEqual(len(capability.calls_for(PromptStage.SUMMARY_GENERATION)), 4)
        self.assertEqual(len(capability.calls_for(PromptStage.SELF_REFINEMENT)), 4)
        self.assertEqual(result.clarity_score, 40)
        self.assertIs(state.history[-1], WorkflowStage.FINALIZE)

    def test_oscillating_clarity_is_bounded(self):
        scores = [evaluation(s) for s in (70, 30, 75, 20, 79, 10)]
        capability = ScriptedCapability(responses={PromptStage.SELF_REFINEMENT: scores})
        result, _ = run_execute(SLOW_PATH_DIFF, capability, EngineConfig(max_iterations=2, clarity_threshold=80))

        self.assertEqual(result.iterations, 2)
        self.assertEqual(len(capability.calls_for(PromptStage.SELF_REFINEMENT)), 3)

    def test_clear_summary_stops_early(self):
        capability = ScriptedCapability(responses={
            PromptStage.SELF_REFINEMENT: [evaluation(50, ["Why the cache exists"]), evaluation(92)],
        })
        result, _ = run_execute(SLOW_PATH_DIFF, capability)

        self.assertEqual(result.iterations, 1)
        self.assertEqual(result.clarity_score, 92)
        second_summary_prompt = capability.calls_for(PromptStage.SUMMARY_GENERATION)[1]
        self.assertIn("Why the cache exists", second_summary_prompt)

    def test_zero_iterations_never_refines(self):
        capability = ScriptedCapability(responses={PromptStage.SELF_REFINEMENT: evaluation(10)})
        result, _ = run_execute(SLOW_PATH_DIFF, capability, EngineConfig().quick())

        self.assertEqual(result.iterations, 0)
        self.assertEqual(len(capability.calls_for(PromptStage.SUMMARY_GENERATION)), 1)

    def test_unparseable_evaluation_finalizes(self):
        capability = ScriptedCapability(responses={PromptStage.SELF_REFINEMENT: "Pretty clear overall."})
        result, _ = run_execute(SLOW_PATH_DIFF, capability)

        self.assertEqual(result.iterations, 0)
        self.assertIsNone(result.clarity_score)
        self.assertEqual(result.summary, "Adds a feature")
        self.assertEqual(result.usage.parse_defects, 1)
        self.assertFalse(result.degraded)

    def test_infinite_clarity_score_finalizes(self):
        capability = ScriptedCapability(responses={PromptStage.SELF_REFINEMENT: '{"clarity_score": 1e999}'})
        result, _ = run_execute(many_file_diff(8), capability)

        self.assertEqual(result.iterations, 0)
        self.assertIsNone(result.clarity_score)
        self.assertEqual(result.summary, "Adds a feature")
        self.assertEqual(result.usage.parse_defects, 1)

    def test_failed_refinement_keeps_previous_summary(self):
        capability = ScriptedCapability(responses={
            PromptStage.SUMMARY_GENERATION: [DEFAULT_RESPONSES[PromptStage.SUMMARY_GENERATION], unavailable()],
            PromptStage.SELF_REFINEMENT: evaluation(30),
        })
        result, _ = run_execute(SLOW_PATH_DIFF, capability)

        self.assertEqual(result.summary, "Adds a feature")
        self.assertFalse(result.degraded)
        self.assertEqual(result.iterations, 1)


class TestFailureHandling(unittest.TestCase):
    def test_one_failed_file_analysis_still_yields_every_file(self):
        def file_response(prompt):
            if "Path: src/b.py" in prompt:
                return unavailable()
            return DEFAULT_RESPONSES[PromptStage.FILE_ANALYSIS]

        capability = ScriptedCapability(responses={PromptStage.FILE_ANALYSIS: file_response})
        result, _ = run_execute(THREE_FILE_DIFF, capability)

        self.assertEqual([fa.path for fa in result.file_analyses], ["src/a.py", "src/b.py", "src/c.py"])
        by_path = {fa.path: fa for fa in result.file_analyses}
        self.assertTrue(by_path["src/b.py"].degraded)
        self.assertEqual(by_path["src/b.py"].summary, "")
        self.assertFalse(by_path["src/a.py"].degraded)
        self.assertEqual(by_path["src/a.py"].summary, "Updates the module")
        self.assertIn("File analysis unavailable for src/b.py", result.notes)
        self.assertFalse(result.degraded)
        self.assertEqual(result.usage.failed_invocations, 1)

    def test_failed_summary_marks_result_degraded(self):
        capability = ScriptedCapability(responses={PromptStage.SUMMARY_GENERATION: unavailable()})
        result, state = run_execute(SLOW_PATH_DIFF, capability)

        self.assertTrue(result.degraded)
        self.assertEqual(result.summary, "")
        self.assertTrue(any("Summary generation unavailable" in r for r in result.degraded_reasons))
        self.assertEqual(len(result.file_analyses), 6)
        self.assertIn(result.complexity_score, range(1, 6))
        self.assertNotIn(WorkflowStage.EVALUATE, state.history)
        self.assertEqual(result["summary"], "")

    def test_every_invocation_failing_is_total_failure(self):
        capability = ScriptedCapability(responses={stage: unavailable() for stage in PromptStage})
        result, _ = run_execute(SECRET_DIFF, capability)

        self.assertTrue(result.degraded)
        self.assertTrue(result.total_failure)
        self.assertIn("Every model invocation failed", result.degraded_reasons)
        self.assertEqual(len(result.critical_findings), 1)

    def test_model_findings_follow_heuristic_findings(self):
        risk = json.dumps({"risks": [
            {"type": "breaking", "severity": "warning", "description": "Renamed public API", "file": "app.py"},
        ]})
        capability = ScriptedCapability(responses={PromptStage.RISK_DETECTION: risk})
        result, _ = run_execute(SECRET_DIFF, capability)

        self.assertEqual([f.provenance for f in result.findings], ["heuristic", "model"])


class TestBudget(unittest.TestCase):
    def test_token_budget_stops_new_work(self):
        capability = ScriptedCapability(tokens=(100, 50))
        config = EngineConfig(file_parallelism=2)
        result, _ = run_execute(SLOW_PATH_DIFF, capability, config, token_budget=200)

        self.assertTrue(result.budget_exceeded)
        self.assertFalse(result.degraded)
        self.assertLess(len(capability.calls_for(PromptStage.FILE_ANALYSIS)), 6)
        self.assertEqual(capability.calls_for(PromptStage.SUMMARY_GENERATION), [])
        self.assertEqual(len(result.file_analyses), 6)
        self.assertTrue(any(n.startswith("Budget exhausted") for n in result.notes))
        self.assertTrue(result.summary)

    def test_cost_ceiling_stops_new_work(self):
        capability = ScriptedCapability()
        result, _ = run_execute(SECRET_DIFF, capability, cost_ceiling=0.000001)

        self.assertTrue(result.budget_exceeded)
        self.assertEqual(len(capability.calls), 1)


class TestConcurrency(unittest.TestCase):
    def test_in_flight_file_analyses_never_exceed_parallelism(self):
        capability = ScriptedCapability(delay=0.05)
        config = EngineConfig(file_parallelism=3)
        result, _ = run_execute(many_file_diff(9), capability, config)

        self.assertLessEqual(capability.max_in_flight, 3)
        self.assertEqual(len(capability.calls_for(PromptStage.FILE_ANALYSIS)), 9)
        self.assertEqual(len(result.file_analyses), 9)


class TestModeHandling(unittest.TestCase):
    def test_executor_mode_mismatch_is_a_type_error(self):
        controller = RefinementController(PromptOnlyStrategy())
        with self.assertRaises(TypeError):
            controller.run(context_for(SECRET_DIFF))

    def test_execute_needs_capability(self):
        with self.assertRaises(TypeError):
            make_controller(EngineConfig(), ExecutionMode.EXECUTE)

    def test_summary_flag_off_skips_summary_stages(self):
        capability = ScriptedCapability()
        result, _ = run_execute(
            SLOW_PATH_DIFF, capability, mode=AnalysisMode(summary=False, risks=True, complexity=True)
        )
        self.assertEqual(capability.calls_for(PromptStage.SUMMARY_GENERATION), [])
        self.assertEqual(capability.calls_for(PromptStage.SELF_REFINEMENT), [])
        self.assertIn("6 file(s) changed", result.summary)

    def test_disabled_stage_is_skipped(self):
        capability = ScriptedCapability()
        config = EngineConfig(enabled_stages=frozenset({
            PromptStage.FILE_ANALYSIS, PromptStage.SUMMARY_GENERATION, PromptStage.SELF_REFINEMENT,
        }))
        run_execute(SECRET_DIFF, capability, config)
        self.assertEqual(capability.calls_for(PromptStage.RISK_DETECTION), [])


if __name__ == "__main__":
    unittest.main()
