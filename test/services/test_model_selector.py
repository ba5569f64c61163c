"""Unit tests for ModelSelector strategies."""

import pytest

from ralph_controller.models.multi_model import (
    ModelSpec,
    ModelSwitchStrategy,
    MultiModelConfig,
    VerificationConfig,
    VerificationTrigger,
)
from ralph_controller.services.model_selector import ModelSelector

CLAUDE = ModelSpec.parse("claude:sonnet")
CODEX = ModelSpec.parse("codex:gpt-5")
OLLAMA = ModelSpec.parse("ollama:llama3.1:8b")


def make_selector(strategy, models=(CLAUDE, CODEX), **kwargs) -> ModelSelector:
    return ModelSelector(MultiModelConfig(models=list(models), strategy=strategy, **kwargs))


class Recorder:
    def __init__(self, selector: ModelSelector):
        self.switches = []
        self.starts = []
        self.completes = []
        selector.on_model_switch.subscribe(lambda m, r: self.switches.append((m, r)))
        selector.on_verification_start.subscribe(self.starts.append)
        selector.on_verification_complete.subscribe(lambda p, d: self.completes.append((p, d)))


class TestDisabled:
    def test_no_config_returns_none(self):
        selector = ModelSelector()

        assert selector.get_current_model() is None
        selector.after_iteration(3)
        assert selector.get_stats().current_model_name == "Default"

    def test_strategy_none_returns_none(self):
        selector = make_selector(ModelSwitchStrategy.NONE)

        assert selector.get_current_model() is None


class TestRoundRobin:
    def test_rotates_every_n_iterations(self):
        selector = make_selector(
            ModelSwitchStrategy.ROUND_ROBIN, models=(CLAUDE, CODEX, OLLAMA), rotate_every_n=2
        )
        recorder = Recorder(selector)

        seen = []
        for _ in range(6):
            seen.append(selector.get_current_model())
            selector.after_iteration(0)

        assert seen == [CLAUDE, CLAUDE, CODEX, CODEX, OLLAMA, OLLAMA]
        assert [reason for _, reason in recorder.switches] == ["Round-robin rotation"] * 3
        assert selector.current_index == 0

    def test_rotates_every_iteration_by_default(self):
        selector = make_selector(ModelSwitchStrategy.ROUND_ROBIN, models=(CLAUDE, CODEX, OLLAMA))

        seen, indexes = [], []
        for _ in range(4):
            seen.append(selector.get_current_model())
            indexes.append(selector.current_index)
            selector.after_iteration(0)

        assert seen == [CLAUDE, CODEX, OLLAMA, CLAUDE]
        assert indexes == [0, 1, 2, 0]

    def test_single_model_never_fires_switch(self):
        selector = make_selector(ModelSwitchStrategy.ROUND_ROBIN, models=(CLAUDE,))
        recorder = Recorder(selector)

        for _ in range(3):
            selector.after_iteration(0)

        assert recorder.switches == []


class TestVerification:
    def test_completion_arms_verifier(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        recorder = Recorder(selector)

        assert selector.on_completion_detected(4) is True

        assert selector.get_current_model() == CODEX
        assert selector.is_verification_iteration is True
        assert recorder.starts == [CODEX]
        assert selector.verification_attempts == 1

    def test_unchanged_file_count_passes(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        recorder = Recorder(selector)
        selector.on_completion_detected(4)
        selector.get_current_model()

        selector.after_iteration(4)
        assert selector.check_verification_passed(4) is True

        assert recorder.completes == [(True, 0)]
        assert selector.pending_verification is True

    def test_more_files_fails_and_returns_to_primary(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        recorder = Recorder(selector)
        selector.on_completion_detected(4)
        selector.get_current_model()

        selector.after_iteration(6)
        assert selector.check_verification_passed(6) is False

        assert recorder.completes == [(False, 2)]
        assert selector.is_verification_iteration is False
        assert selector.pending_verification is False
        assert selector.get_current_model() == CLAUDE

    def test_fewer_files_counts_as_pass(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        recorder = Recorder(selector)
        selector.on_completion_detected(5)

        assert selector.check_verification_passed(3) is True
        assert recorder.completes == [(True, 0)]

    def test_attempts_are_bounded(self):
        selector = make_selector(
            ModelSwitchStrategy.VERIFICATION,
            verification=VerificationConfig(max_verification_attempts=2),
        )
        recorder = Recorder(selector)

        assert selector.on_completion_detected(0) is True
        selector.check_verification_passed(1)
        assert selector.on_completion_detected(1) is True
        selector.check_verification_passed(2)

        assert selector.on_completion_detected(2) is False
        assert selector.verification_attempts == 2
        assert len(recorder.starts) == 2
        assert selector.pending_verification is False

    def test_attempts_not_reset_by_failure_only_by_reset(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        selector.on_completion_detected(0)
        selector.check_verification_passed(3)

        assert selector.verification_attempts == 1

        selector.reset()
        assert selector.verification_attempts == 0
        assert selector.current_index == 0

    def test_out_of_range_verifier_uses_current_model(self):
        selector = make_selector(
            ModelSwitchStrategy.VERIFICATION,
            verification=VerificationConfig(verifier_index=5),
        )
        selector.on_completion_detected(0)

        assert selector.get_current_model() == CLAUDE
        assert selector.is_verification_iteration is False

    def test_ignored_under_other_strategies(self):
        selector = make_selector(ModelSwitchStrategy.ROUND_ROBIN)

        assert selector.on_completion_detected(0) is False
        assert selector.request_verification(0) is False

    def test_every_n_iterations_trigger(self):
        selector = make_selector(
            ModelSwitchStrategy.VERIFICATION,
            verification=VerificationConfig(
                trigger=VerificationTrigger.EVERY_N_ITERATIONS, every_n_iterations=3
            ),
        )
        recorder = Recorder(selector)

        for _ in range(2):
            selector.get_current_model()
            selector.after_iteration(1)
        assert recorder.starts == []

        selector.get_current_model()
        selector.after_iteration(1)

        assert recorder.starts == [CODEX]
        assert selector.get_current_model() == CODEX

    def test_manual_request(self):
        selector = make_selector(
            ModelSwitchStrategy.VERIFICATION,
            verification=VerificationConfig(trigger=VerificationTrigger.MANUAL),
        )

        assert selector.request_verification(2) is True
        assert selector.get_current_model() == CODEX
        assert selector.files_modified_before_verification == 2


class TestFallback:
    def test_advances_on_failure(self):
        selector = make_selector(ModelSwitchStrategy.FALLBACK)
        recorder = Recorder(selector)

        selector.on_iteration_failed(is_rate_limit=True)
        assert selector.get_current_model() == CODEX
        selector.on_iteration_failed()
        assert selector.get_current_model() == CLAUDE

        assert [reason for _, reason in recorder.switches] == [
            "Fallback due to rate limit",
            "Fallback due to failure",
        ]

    def test_after_iteration_does_not_rotate(self):
        selector = make_selector(ModelSwitchStrategy.FALLBACK)

        selector.after_iteration(0)

        assert selector.get_current_model() == CLAUDE

    @pytest.mark.parametrize(
        "strategy,models",
        [
            (ModelSwitchStrategy.FALLBACK, (CLAUDE,)),
            (ModelSwitchStrategy.ROUND_ROBIN, (CLAUDE, CODEX)),
        ],
    )
    def test_no_switch_when_not_applicable(self, strategy, models):
        selector = make_selector(strategy, models=models)
        recorder = Recorder(selector)

        selector.on_iteration_failed(is_rate_limit=False)

        assert recorder.switches == []
        assert selector.current_index == 0


class TestStats:
    def test_snapshot(self):
        selector = make_selector(ModelSwitchStrategy.VERIFICATION)
        selector.on_completion_detected(0)
        selector.get_current_model()

        stats = selector.get_stats()

        assert stats.strategy == ModelSwitchStrategy.VERIFICATION
        assert stats.current_model_name == "Claude:sonnet"
        assert stats.total_models == 2
        assert stats.verification_attempts == 1
        assert stats.pending_verification is True
        assert stats.is_verification_iteration is True
