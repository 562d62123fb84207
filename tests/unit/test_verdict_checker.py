"""Unit tests for the idle and plan verdict checkers."""

import asyncio
import re

import pytest

from respawn_supervisor.models import CheckStatus, VERDICT_CANCELLED, VERDICT_ERROR
from respawn_supervisor.verdict_checker import IdleChecker, PlanChecker


SESSION_ID = "sess1234abcd"


def _idle_checker(runner, config, tmp_path) -> IdleChecker:
    return IdleChecker(SESSION_ID, runner, config, temp_dir=str(tmp_path))


def _leftover_files(tmp_path):
    return list(tmp_path.glob("respawn-*check-*.txt"))


class TestParsing:

    def test_verdict_and_reasoning(self, fake_runner):
        checker = IdleChecker(SESSION_ID, fake_runner)
        result = checker.parse_output("IDLE - prompt visible, no spinner\nmore detail\n__IDLECHECK_DONE__\n", 12)

        assert result.verdict == "IDLE"
        assert result.reasoning == "prompt visible, no spinner\nmore detail"
        assert result.duration_ms == 12

    def test_case_insensitive_and_default_reasoning(self, fake_runner):
        checker = IdleChecker(SESSION_ID, fake_runner)
        result = checker.parse_output("working\n__IDLECHECK_DONE__")

        assert result.verdict == "WORKING"
        assert result.reasoning == "AI determined: WORKING"

    def test_negative_plan_verdict_not_confused_with_positive(self, fake_runner):
        checker = PlanChecker(SESSION_ID, fake_runner)

        assert checker.parse_output("NOT_PLAN_MODE: just prose").verdict == "NOT_PLAN_MODE"
        assert checker.parse_output("PLAN_MODE\nnumbered menu").verdict == "PLAN_MODE"

    def test_unparseable_output_quotes_offending_text(self, fake_runner):
        checker = IdleChecker(SESSION_ID, fake_runner)
        garbage = "I think the session might be " + "x" * 200
        result = checker.parse_output(garbage + "\n__IDLECHECK_DONE__")

        assert result.verdict == VERDICT_ERROR
        assert result.reasoning == f'Could not parse verdict from: "{garbage[:100]}"'

    def test_verdict_must_be_a_whole_word(self, fake_runner):
        checker = IdleChecker(SESSION_ID, fake_runner)
        assert checker.parse_output("IDLEWORKING").verdict == VERDICT_ERROR

    def test_empty_output_is_error(self, fake_runner):
        checker = IdleChecker(SESSION_ID, fake_runner)
        assert checker.parse_output("__IDLECHECK_DONE__\n").verdict == VERDICT_ERROR


class TestPrompt:

    def test_prompt_strips_ansi_and_keeps_tail(self, fake_runner, make_checker_config):
        checker = IdleChecker(SESSION_ID, fake_runner, make_checker_config(max_context_chars=10))
        prompt = checker.build_prompt("\x1b[31mOLD-CONTENT\x1b[0m" + "0123456789")

        assert "0123456789" in prompt
        assert "OLD" not in prompt
        assert "\x1b" not in prompt


class TestCheck:

    @pytest.mark.asyncio
    async def test_positive_verdict_releases_invocation(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE\nPrompt is visible")
        checker = _idle_checker(runner, make_checker_config(), tmp_path)

        result = await checker.check("✻ Worked for 2m 46s\n❯ ")

        assert result.verdict == "IDLE"
        assert result.reasoning == "Prompt is visible"
        assert checker.status == CheckStatus.READY
        assert len(runner.spawned) == 1
        assert re.fullmatch(r"respawn-idlecheck-sess1234-\d+", runner.spawned[0])
        assert runner.killed == runner.spawned
        assert _leftover_files(tmp_path) == []
        assert checker.get_state().total_checks == 1

    @pytest.mark.asyncio
    async def test_command_runs_cli_with_model_and_marker(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE")
        checker = _idle_checker(runner, make_checker_config(model="test-model"), tmp_path)

        await checker.check("buffer")

        command = runner.commands[0]
        assert command.startswith("claude -p --model test-model --output-format text ")
        assert command.endswith(f"echo __IDLECHECK_DONE__ >> {tmp_path}/{runner.spawned[0]}.txt")

    @pytest.mark.asyncio
    async def test_negative_verdict_enters_cooldown(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="WORKING\nspinner visible")
        checker = _idle_checker(runner, make_checker_config(cooldown_ms=5000), tmp_path)

        result = await checker.check("buffer")
        assert result.verdict == "WORKING"
        assert checker.status == CheckStatus.COOLDOWN
        assert checker.get_state().cooldown_ends_at is not None

        second = await checker.check("buffer")
        assert second.verdict == VERDICT_ERROR
        assert second.reasoning == "On cooldown"
        assert len(runner.spawned) == 1

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="WORKING")
        checker = _idle_checker(runner, make_checker_config(cooldown_ms=50), tmp_path)

        await checker.check("buffer")
        await asyncio.sleep(0.1)

        assert checker.status == CheckStatus.READY
        assert not checker.is_on_cooldown()

    @pytest.mark.asyncio
    async def test_three_consecutive_errors_disable_checker(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(fail=True)
        checker = _idle_checker(runner, make_checker_config(max_consecutive_errors=3, error_cooldown_ms=0), tmp_path)

        for attempt in range(3):
            result = await checker.check("buffer")
            assert result.verdict == VERDICT_ERROR
            assert "Failed to spawn" in result.reasoning

        state = checker.get_state()
        assert state.status == CheckStatus.DISABLED
        assert state.consecutive_errors == 3
        assert state.disabled_reason.startswith("3 consecutive errors:")

        # Further checks are rejected without spawning anything
        runner.fail = False
        runner.response = "IDLE"
        rejected = await checker.check("buffer")
        assert rejected.verdict == VERDICT_ERROR
        assert rejected.reasoning.startswith("Disabled:")
        assert runner.spawned == []

        # Only an explicit enable recovers
        checker.update_config({"cooldown_ms": 10})
        assert checker.status == CheckStatus.DISABLED
        checker.update_config({"enabled": True})
        assert checker.status == CheckStatus.READY
        assert (await checker.check("buffer")).verdict == "IDLE"

    @pytest.mark.asyncio
    async def test_error_below_threshold_uses_error_cooldown(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="maybe idle?")
        checker = _idle_checker(runner, make_checker_config(error_cooldown_ms=5000), tmp_path)

        result = await checker.check("buffer")

        assert result.verdict == VERDICT_ERROR
        assert checker.status == CheckStatus.ERROR
        assert checker.is_on_cooldown()
        assert checker.get_state().consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_success_resets_error_counter(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="garbage")
        checker = _idle_checker(runner, make_checker_config(error_cooldown_ms=0), tmp_path)

        await checker.check("buffer")
        assert checker.get_state().consecutive_errors == 1

        runner.response = "IDLE"
        await checker.check("buffer")
        assert checker.get_state().consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_timeout_is_error_and_cleans_up(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner()  # never answers
        checker = _idle_checker(runner, make_checker_config(check_timeout_ms=60), tmp_path)

        result = await checker.check("buffer")

        assert result.verdict == VERDICT_ERROR
        assert "timed out after 60ms" in result.reasoning
        assert runner.killed == runner.spawned
        assert _leftover_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_already_checking_rejected(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE", delay=0.1)
        checker = _idle_checker(runner, make_checker_config(), tmp_path)

        first = asyncio.create_task(checker.check("buffer"))
        await asyncio.sleep(0.02)
        assert checker.status == CheckStatus.CHECKING

        second = await checker.check("buffer")
        assert second.reasoning == "Already checking"
        assert (await first).verdict == "IDLE"
        assert len(runner.spawned) == 1


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_resolves_cancelled_and_releases_everything(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE", delay=5)
        checker = _idle_checker(runner, make_checker_config(), tmp_path)

        task = asyncio.create_task(checker.check("buffer"))
        await asyncio.sleep(0.03)
        assert len(_leftover_files(tmp_path)) == 1

        checker.cancel()

        # Released synchronously, before the awaiting task even resumes
        assert runner.killed == runner.spawned
        assert runner.alive == set()
        assert _leftover_files(tmp_path) == []
        assert checker.status == CheckStatus.READY

        result = await task
        assert result.verdict == VERDICT_CANCELLED
        assert checker.get_state().consecutive_errors == 0
        assert checker.get_state().last_verdict is None

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, fake_runner, make_checker_config, tmp_path):
        checker = _idle_checker(fake_runner, make_checker_config(), tmp_path)
        checker.cancel()
        assert checker.status == CheckStatus.READY
        assert fake_runner.killed == []

    @pytest.mark.asyncio
    async def test_new_check_after_cancel_is_not_disturbed(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE", delay=0.05)
        checker = _idle_checker(runner, make_checker_config(), tmp_path)

        stale = asyncio.create_task(checker.check("first"))
        await asyncio.sleep(0.01)
        checker.cancel()

        fresh = await checker.check("second")
        assert fresh.verdict == "IDLE"
        assert (await stale).verdict == VERDICT_CANCELLED
        assert len(runner.spawned) == 2

    @pytest.mark.asyncio
    async def test_disable_via_config_cancels_in_flight_check(self, make_runner, make_checker_config, tmp_path):
        runner = make_runner(response="IDLE", delay=5)
        checker = _idle_checker(runner, make_checker_config(), tmp_path)

        task = asyncio.create_task(checker.check("buffer"))
        await asyncio.sleep(0.02)
        checker.update_config({"enabled": False})

        assert (await task).verdict == VERDICT_CANCELLED
        assert checker.status == CheckStatus.DISABLED
        assert checker.get_state().disabled_reason == "Disabled by config"
        assert _leftover_files(tmp_path) == []


@pytest.mark.asyncio
async def test_reset_clears_verdict_and_cooldown(make_runner, make_checker_config, tmp_path):
    runner = make_runner(response="WORKING")
    checker = _idle_checker(runner, make_checker_config(cooldown_ms=5000), tmp_path)
    await checker.check("buffer")
    assert checker.is_on_cooldown()

    checker.reset()

    state = checker.get_state()
    assert state.status == CheckStatus.READY
    assert state.last_verdict is None
    assert not checker.is_on_cooldown()


def test_checker_built_disabled_reports_disabled(fake_runner, make_checker_config):
    checker = PlanChecker(SESSION_ID, fake_runner, make_checker_config(enabled=False))
    assert checker.status == CheckStatus.DISABLED
