"""Tests for AdmissionController."""

from __future__ import annotations

import asyncio
import io
import queue

import pytest
from rich.console import Console

from conftest import FakeClock
from copilotlink.admission import AdmissionController, Approver, ConsoleApprover
from copilotlink.errors import RateLimitError
from copilotlink.models import AdmissionDecision, RequestSummary


class ScriptedApprover:
    """Approver that answers from a script, optionally after a delay."""

    def __init__(self, answer: bool = True, delay: float = 0.0) -> None:
        self.answer = answer
        self.delay = delay
        self.seen: list[RequestSummary] = []

    async def request_approval(self, summary: RequestSummary) -> bool:
        self.seen.append(summary)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.answer


class FakeTerminal:
    """Operator input fed by the test; counts how many blocking reads were started."""

    def __init__(self) -> None:
        self.answers: queue.Queue[bool] = queue.Queue()
        self.reads = 0

    def ask(self) -> bool:
        self.reads += 1
        return self.answers.get(timeout=5)


def _summary(request_id: str = "r1") -> RequestSummary:
    return RequestSummary(request_id=request_id, dialect="openai", model="gpt-4.1")


class TestRateLimit:
    async def test_no_limit_admits_immediately(self, clock: FakeClock):
        controller = AdmissionController(clock=clock, sleep=clock.sleep)
        ticket = await controller.admit("r1")
        assert ticket.decision == AdmissionDecision.APPROVE
        assert clock.sleeps == []

    async def test_wait_policy_delays_second_request(self, clock: FakeClock):
        controller = AdmissionController(
            min_interval=2.0, wait=True, clock=clock, sleep=clock.sleep
        )
        first = await controller.admit("r1")
        clock.advance(0.1)
        second = await controller.admit("r2")

        assert second.resolved_at - first.resolved_at >= 1.9
        assert clock.sleeps == [pytest.approx(1.9)]
        assert second.decision == AdmissionDecision.APPROVE

    async def test_reject_policy_fails_with_retry_after(self, clock: FakeClock):
        controller = AdmissionController(min_interval=2.0, clock=clock, sleep=clock.sleep)
        await controller.admit("r1")
        clock.advance(0.1)

        with pytest.raises(RateLimitError) as exc_info:
            await controller.admit("r2")

        assert exc_info.value.retry_after >= 1.9
        assert exc_info.value.status_code == 429
        assert clock.sleeps == []

    async def test_rejected_request_reserves_nothing(self, clock: FakeClock):
        controller = AdmissionController(min_interval=2.0, clock=clock, sleep=clock.sleep)
        await controller.admit("r1")
        clock.advance(1.0)
        with pytest.raises(RateLimitError):
            await controller.admit("r2")
        clock.advance(1.0)
        ticket = await controller.admit("r3")
        assert ticket.decision == AdmissionDecision.APPROVE

    async def test_wait_policy_preserves_arrival_order(self):
        forwarded: list[str] = []
        controller = AdmissionController(min_interval=0.02, wait=True)

        async def submit(name: str) -> None:
            await controller.admit(name)
            forwarded.append(name)

        await asyncio.gather(*(submit(f"r{i}") for i in range(5)))
        assert forwarded == ["r0", "r1", "r2", "r3", "r4"]

    async def test_slots_are_spaced_by_interval(self, clock: FakeClock):
        controller = AdmissionController(
            min_interval=2.0, wait=True, clock=clock, sleep=clock.sleep
        )
        await asyncio.gather(*(controller.admit(f"r{i}") for i in range(3)))
        assert controller.last_forwarded_at == pytest.approx(1_000.0 + 4.0)


class TestApproval:
    async def test_disabled_approves(self, clock: FakeClock):
        controller = AdmissionController(clock=clock, sleep=clock.sleep)
        ticket = await controller.admit("r1")
        assert await controller.approve(ticket, _summary()) == AdmissionDecision.APPROVE

    async def test_operator_approves(self):
        approver = ScriptedApprover(answer=True)
        controller = AdmissionController(manual_approve=True, approver=approver)
        ticket = await controller.admit("r1")

        decision = await controller.approve(ticket, _summary())

        assert decision == AdmissionDecision.APPROVE
        assert ticket.decision == AdmissionDecision.APPROVE
        assert approver.seen[0].model == "gpt-4.1"

    async def test_operator_denies(self):
        controller = AdmissionController(
            manual_approve=True, approver=ScriptedApprover(answer=False)
        )
        ticket = await controller.admit("r1")
        assert await controller.approve(ticket, _summary()) == AdmissionDecision.DENY

    async def test_timeout_resolves_to_deny(self):
        controller = AdmissionController(
            manual_approve=True,
            approver=ScriptedApprover(answer=True, delay=1.0),
            approval_timeout=0.01,
        )
        ticket = await controller.admit("r1")
        assert await controller.approve(ticket, _summary()) == AdmissionDecision.DENY
        assert ticket.decision == AdmissionDecision.DENY

    async def test_approvals_can_finish_out_of_order(self):
        class PerRequest:
            async def request_approval(self, summary: RequestSummary) -> bool:
                await asyncio.sleep(0.05 if summary.request_id == "slow" else 0.0)
                return True

        finished: list[str] = []
        controller = AdmissionController(manual_approve=True, approver=PerRequest())

        async def submit(request_id: str) -> None:
            ticket = await controller.admit(request_id)
            await controller.approve(ticket, _summary(request_id))
            finished.append(request_id)

        await asyncio.gather(submit("slow"), submit("fast"))
        assert finished == ["fast", "slow"]

    def test_manual_approve_requires_approver(self):
        with pytest.raises(ValueError):
            AdmissionController(manual_approve=True)

    def test_scripted_approver_satisfies_protocol(self):
        assert isinstance(ScriptedApprover(), Approver)


class TestConsoleApprover:
    @pytest.fixture
    def terminal(self) -> FakeTerminal:
        return FakeTerminal()

    @pytest.fixture
    def output(self) -> io.StringIO:
        return io.StringIO()

    @pytest.fixture
    def approver(self, terminal: FakeTerminal, output: io.StringIO) -> ConsoleApprover:
        return ConsoleApprover(console=Console(file=output, width=200), ask=terminal.ask)

    async def test_shows_request_and_returns_answer(
        self, approver: ConsoleApprover, terminal: FakeTerminal, output: io.StringIO
    ):
        terminal.answers.put(True)
        assert await approver.request_approval(_summary("r1")) is True
        assert "r1" in output.getvalue()
        assert "gpt-4.1" in output.getvalue()

    async def test_timed_out_read_is_taken_over_by_next_request(
        self, approver: ConsoleApprover, terminal: FakeTerminal, output: io.StringIO
    ):
        controller = AdmissionController(
            manual_approve=True, approver=approver, approval_timeout=0.05
        )
        ticket = await controller.admit("first")
        assert await controller.approve(ticket, _summary("first")) == AdmissionDecision.DENY

        asyncio.get_running_loop().call_later(0.05, terminal.answers.put, True)
        assert await approver.request_approval(_summary("second")) is True
        # One thread on stdin; the operator's answer went to the request on screen
        assert terminal.reads == 1
        assert "second" in output.getvalue()

    async def test_answer_after_timeout_is_discarded(
        self, approver: ConsoleApprover, terminal: FakeTerminal
    ):
        controller = AdmissionController(
            manual_approve=True, approver=approver, approval_timeout=0.05
        )
        ticket = await controller.admit("first")
        assert await controller.approve(ticket, _summary("first")) == AdmissionDecision.DENY

        terminal.answers.put(True)
        await asyncio.sleep(0.2)

        asyncio.get_running_loop().call_later(0.05, terminal.answers.put, False)
        assert await approver.request_approval(_summary("second")) is False
        assert terminal.reads == 2

    def test_satisfies_protocol(self, approver: ConsoleApprover):
        assert isinstance(approver, Approver)
