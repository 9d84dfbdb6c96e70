"""Tests for multi-backend consensus."""

import json
import unittest

from diffsage.config import ConsensusConfig, EngineConfig
from diffsage.consensus import ConsensusAggregator, dedupe_findings, enforce_critical_findings
from diffsage.errors import AggregationFailure, CapabilityUnavailable
from diffsage.models import AnalysisResult, ConsensusStatus, PromptStage, ResourceUsage
from diffsage.risk_detector import Finding
from fakes import SECRET_DIFF, ScriptedCapability, context_for, make_backend, unavailable


ALL_FAIL = {stage: unavailable() for stage in PromptStage}


class Council:
    """Backends plus the scripted capability each one resolves to."""

    def __init__(self, *specs, delay=None):
        self.backends = []
        self.capabilities = {}
        for spec in specs:
            identifier, responses = spec if isinstance(spec, tuple) else (spec, None)
            backend = make_backend(identifier)
            self.backends.append(backend)
            self.capabilities[identifier] = ScriptedCapability(
                identifier, responses=responses, backend=backend, delay=(delay or {}).get(identifier, 0.0)
            )

    def factory(self, backend):
        return self.capabilities[backend.identifier]

    def aggregator(self, config=None, **kwargs):
        return ConsensusAggregator(
            self.backends, config=config or EngineConfig(), capability_factory=self.factory, **kwargs
        )


def chair_says(**payload) -> dict:
    payload.setdefault("summary", "Merged")
    payload.setdefault("complexity", 3)
    payload.setdefault("risks", [])
    return {PromptStage.CONSENSUS_SYNTHESIS: json.dumps(payload)}


class TestCriticalFindingsSurvive(unittest.TestCase):
    def test_chair_dropping_a_critical_does_not_lose_it(self):
        council = Council("alpha", "beta", "gamma")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.SYNTHESIZED)
        critical = report.result.critical_findings
        self.assertEqual(len(critical), 1)
        self.assertEqual(critical[0].file, "app.py")
        self.assertEqual(critical[0].line, 2)

    def test_chair_downgrading_a_critical_is_overridden(self):
        downgraded = {"type": "security", "severity": "info", "description": "Password literal",
                      "file": "app.py", "line": 2}
        council = Council(("alpha", chair_says(risks=[downgraded])), "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        at_line = [f for f in report.result.findings if f.line == 2]
        self.assertEqual(len(at_line), 1)
        self.assertEqual(at_line[0].severity, "critical")
        self.assertEqual(at_line[0].source, "alpha")

    def test_unrelated_chair_finding_on_the_same_line_is_not_upgraded(self):
        unrelated = {"type": "quality", "severity": "warning", "description": "Unused import os",
                     "file": "app.py", "line": 2}
        council = Council(("alpha", chair_says(risks=[unrelated])), "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        by_description = {f.description: f for f in report.result.findings}
        self.assertEqual(by_description["Unused import os"].severity, "warning")
        secret = by_description["Hardcoded secret or credential literal"]
        self.assertEqual((secret.severity, secret.file, secret.line), ("critical", "app.py", 2))
        self.assertEqual([f.description for f in report.result.critical_findings],
                         ["Hardcoded secret or credential literal"])

    def test_model_critical_from_one_backend_is_kept(self):
        risk = json.dumps({"risks": [{"type": "breaking", "severity": "high",
                                      "description": "Drops the users table", "file": "app.py"}]})
        council = Council(("alpha", {PromptStage.RISK_DETECTION: risk}), "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        descriptions = [f.description for f in report.result.critical_findings]
        self.assertIn("Drops the users table", descriptions)
        kept = next(f for f in report.result.findings if f.description == "Drops the users table")
        self.assertEqual(kept.source, "alpha")


class TestPartialFailure(unittest.TestCase):
    def test_one_failed_backend_is_reported(self):
        council = Council("alpha", ("beta", ALL_FAIL), "gamma")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.SYNTHESIZED)
        self.assertEqual(list(report.results), ["alpha", "gamma"])
        self.assertIn("beta", report.failures)
        self.assertEqual(report.result.backend, "consensus")

    def test_timed_out_backend_counts_as_failed(self):
        council = Council("alpha", "beta", "gamma", delay={"gamma": 0.5})
        config = EngineConfig(invocation_timeout=0.05)
        report = council.aggregator(config).run(context_for(SECRET_DIFF))

        self.assertEqual(set(report.results), {"alpha", "beta"})
        self.assertIn("gamma", report.failures)

    def test_single_survivor_is_returned_without_synthesis(self):
        council = Council("alpha", ("beta", ALL_FAIL), ("gamma", ALL_FAIL))
        report = council.aggregator().run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.SINGLE_BACKEND)
        self.assertIs(report.result, report.results["alpha"])
        self.assertEqual(council.capabilities["alpha"].calls_for(PromptStage.CONSENSUS_SYNTHESIS), [])

    def test_every_backend_failing_raises(self):
        council = Council(("alpha", ALL_FAIL), ("beta", ALL_FAIL))
        with self.assertRaises(AggregationFailure) as ctx:
            council.aggregator().run(context_for(SECRET_DIFF))
        self.assertEqual(set(ctx.exception.failures), {"alpha", "beta"})


class TestNoCouncil(unittest.TestCase):
    def test_primary_backend_runs_alone(self):
        primary = make_backend("solo")
        capability = ScriptedCapability("solo", backend=primary)
        aggregator = ConsensusAggregator([], primary=primary, capability_factory=lambda b: capability)
        report = aggregator.run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.NOT_ATTEMPTED)
        self.assertEqual(list(report.results), ["solo"])
        self.assertEqual(report.result.summary, "Adds a feature")

    def test_failing_primary_returns_its_degraded_result(self):
        primary = make_backend("solo")
        capability = ScriptedCapability("solo", responses=ALL_FAIL, backend=primary)
        aggregator = ConsensusAggregator([], primary=primary, capability_factory=lambda b: capability)
        report = aggregator.run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.NOT_ATTEMPTED)
        self.assertIs(report.result, report.results["solo"])
        self.assertTrue(report.result.degraded)
        self.assertTrue(report.result.total_failure)
        self.assertEqual(len(report.result.critical_findings), 1)

    def test_primary_without_credentials_is_degraded(self):
        def refuse(backend):
            raise CapabilityUnavailable(backend.identifier, "no API key configured for openai")

        aggregator = ConsensusAggregator([], primary=make_backend("solo"), capability_factory=refuse)
        report = aggregator.run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.NOT_ATTEMPTED)
        self.assertTrue(report.result.degraded)
        self.assertEqual(report.result.findings[0].description, "Hardcoded secret or credential literal")

    def test_council_backend_without_credentials_counts_as_failed(self):
        council = Council("alpha", "beta")
        backends = council.backends + [make_backend("gamma")]

        def factory(backend):
            if backend.identifier == "gamma":
                raise CapabilityUnavailable("gamma", "no API key configured for openai")
            return council.capabilities[backend.identifier]

        report = ConsensusAggregator(backends, capability_factory=factory).run(context_for(SECRET_DIFF))
        self.assertEqual(list(report.results), ["alpha", "beta"])
        self.assertIn("gamma", report.failures)

    def test_nothing_to_run_raises(self):
        with self.assertRaises(AggregationFailure):
            ConsensusAggregator([]).run(context_for(SECRET_DIFF))


class TestSynthesis(unittest.TestCase):
    def test_chair_sees_every_result(self):
        council = Council(
            ("alpha", {PromptStage.SUMMARY_GENERATION: json.dumps({"summary": "Alpha view"})}),
            ("beta", {PromptStage.SUMMARY_GENERATION: json.dumps({"summary": "Beta view"})}),
        )
        report = council.aggregator().run(context_for(SECRET_DIFF))

        (prompt,) = council.capabilities["alpha"].calls_for(PromptStage.CONSENSUS_SYNTHESIS)
        self.assertIn("Alpha view", prompt)
        self.assertIn("Beta view", prompt)
        self.assertEqual(report.chair, "alpha")
        self.assertEqual(report.result.summary, "Merged")

    def test_configured_chair_is_used(self):
        council = Council("alpha", "beta", "gamma")
        config = EngineConfig(consensus=ConsensusConfig(enabled=True, chair="gamma"))
        report = council.aggregator(config).run(context_for(SECRET_DIFF))

        self.assertEqual(report.chair, "gamma")
        self.assertEqual(len(council.capabilities["gamma"].calls_for(PromptStage.CONSENSUS_SYNTHESIS)), 1)
        self.assertEqual(council.capabilities["alpha"].calls_for(PromptStage.CONSENSUS_SYNTHESIS), [])

    def test_unparseable_chair_output_falls_back_to_first_result(self):
        council = Council(("alpha", {PromptStage.CONSENSUS_SYNTHESIS: "They mostly agree."}), "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))

        self.assertEqual(report.status, ConsensusStatus.SYNTHESIS_FAILED)
        self.assertTrue(report.synthesis_error)
        self.assertEqual(report.result.backend, "alpha")
        self.assertTrue(any(n.startswith("[Consensus synthesis failed]") for n in report.result.notes))
        self.assertEqual(len(report.result.critical_findings), 1)

    def test_unavailable_chair_falls_back(self):
        council = Council(("alpha", {PromptStage.CONSENSUS_SYNTHESIS: unavailable("alpha")}), "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))
        self.assertEqual(report.status, ConsensusStatus.SYNTHESIS_FAILED)

    def test_usage_includes_every_backend_and_the_chair(self):
        council = Council("alpha", "beta")
        report = council.aggregator().run(context_for(SECRET_DIFF))
        per_backend = sum(r.usage.invocations for r in report.results.values())
        self.assertEqual(report.result.usage.invocations, per_backend + 1)

    def test_results_keep_configuration_order(self):
        council = Council("alpha", "beta", "gamma", delay={"alpha": 0.1})
        config = EngineConfig(consensus=ConsensusConfig(parallelism=3))
        report = council.aggregator(config).run(context_for(SECRET_DIFF))
        self.assertEqual(list(report.results), ["alpha", "beta", "gamma"])


class TestComplexityAverage(unittest.TestCase):
    def _synthesize(self, scores):
        council = Council(*[f"b{i}" for i in range(len(scores))])
        results = {
            f"b{i}": AnalysisResult(summary=f"view {i}", complexity_score=s, backend=f"b{i}", usage=ResourceUsage())
            for i, s in enumerate(scores)
        }
        return council.aggregator()._synthesize(context_for(SECRET_DIFF), results, {})

    def test_half_rounds_up(self):
        report = self._synthesize([2, 3])
        self.assertEqual(report.complexity_average, 2.5)
        self.assertEqual(report.result.complexity_score, 3)

    def test_average_ignores_chair_complexity(self):
        report = self._synthesize([1, 1, 2])
        self.assertAlmostEqual(report.complexity_average, 4 / 3)
        self.assertEqual(report.result.complexity_score, 1)


class TestFindingMerge(unittest.TestCase):
    def test_dedupe_keeps_most_severe(self):
        a = Finding("security", "warning", "Weak hash", "auth.py", 4)
        b = Finding("security", "critical", "weak  HASH", "auth.py", 4)
        (merged,) = dedupe_findings([a, b])
        self.assertEqual(merged.severity, "critical")
        self.assertEqual(merged.description, "Weak hash")

    def test_distinct_lines_are_kept(self):
        a = Finding("quality", "info", "Long function", "a.py", 1)
        b = Finding("quality", "info", "Long function", "a.py", 90)
        self.assertEqual(len(dedupe_findings([a, b])), 2)

    def test_enforce_appends_missing_critical(self):
        critical = Finding("security", "critical", "Token in source", "cfg.py", 3)
        results = {"beta": AnalysisResult(findings=(critical,))}
        (kept,) = enforce_critical_findings([], results)
        self.assertEqual(kept.severity, "critical")
        self.assertEqual(kept.source, "beta")

    def test_enforce_upgrades_match_by_description(self):
        critical = Finding("security", "critical", "Token in source", "cfg.py")
        weaker = Finding("security", "warning", "token in source", "cfg.py")
        (kept,) = enforce_critical_findings([weaker], {"beta": AnalysisResult(findings=(critical,))})
        self.assertEqual(kept.severity, "critical")

    def test_enforce_ignores_other_categories_on_the_same_line(self):
        critical = Finding("security", "critical", "Token in source", "cfg.py", 3)
        other = Finding("quality", "warning", "Unused import", "cfg.py", 3)
        merged = enforce_critical_findings([other], {"beta": AnalysisResult(findings=(critical,))})
        self.assertEqual(merged[0], other)
        self.assertEqual(merged[1].description, "Token in source")
        self.assertEqual(merged[1].severity, "critical")

    def test_enforce_upgrades_same_category_on_the_same_line(self):
        critical = Finding("security", "critical", "Token in source", "cfg.py", 3)
        reworded = Finding("security", "warning", "Credential committed", "cfg.py", 3)
        (kept,) = enforce_critical_findings([reworded], {"beta": AnalysisResult(findings=(critical,))})
        self.assertEqual((kept.description, kept.severity), ("Credential committed", "critical"))


if __name__ == "__main__":
    unittest.main()
