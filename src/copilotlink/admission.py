"""Admission control: minimum request interval and optional operator approval."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.prompt import Confirm

from copilotlink.errors import RateLimitError
from copilotlink.models import AdmissionDecision, AdmissionTicket, RequestSummary

logger = logging.getLogger(__name__)


@runtime_checkable
class Approver(Protocol):
    """Operator-facing collaborator that decides on a single request."""

    async def request_approval(self, summary: RequestSummary) -> bool:
        """Return True to forward the request, False to deny it."""
        ...


class ConsoleApprover:
    """Asks the operator on the server's terminal.

    Prompts are serialized, one pending question at a time. The blocking
    read runs in a worker thread so other requests keep flowing. A read
    outlives a request that timed out: the next request takes it over, so
    there is never more than one thread waiting on stdin. An answer that
    arrives while no request is waiting is discarded.
    """

    _QUESTION = "Forward this request?"

    def __init__(
        self,
        console: Console | None = None,
        ask: Callable[[], bool] | None = None,
    ) -> None:
        self._console = console or Console(stderr=True)
        self._ask = ask or self._confirm
        self._lock = asyncio.Lock()
        self._pending: asyncio.Future[bool] | None = None

    def _confirm(self) -> bool:
        return Confirm.ask(self._QUESTION, console=self._console, default=False)

    async def request_approval(self, summary: RequestSummary) -> bool:
        async with self._lock:
            pending = self._pending
            if pending is not None and pending.done():
                # Answered after its request had already timed out
                if not pending.cancelled():
                    pending.exception()
                logger.info("Discarding a late approval answer")
                pending = self._pending = None

            preview = summary.last_message[:200].replace("\n", " ")
            self._console.print(
                f"\n[bold yellow]Approval needed[/bold yellow] {summary.request_id} "
                f"[cyan]{summary.dialect}[/cyan] model=[magenta]{summary.model}[/magenta] "
                f"messages={summary.message_count} stream={summary.stream}",
                highlight=False,
            )
            if preview:
                self._console.print(f"  [dim]{preview}[/dim]", highlight=False)

            if pending is None:
                pending = self._pending = asyncio.ensure_future(asyncio.to_thread(self._ask))
            else:
                self._console.print(f"{self._QUESTION} [y/n] (n): ", end="", markup=False)

            # shield: a timed-out request leaves the read running for the next one
            answer = await asyncio.shield(pending)
            self._pending = None
            return answer


class AdmissionController:
    """Gates every request before it may touch the credential or the upstream.

    Rate limiting reserves a forwarding slot under a lock: each request is
    assigned ``max(now, last_slot + min_interval)`` in arrival order. With the
    wait policy the request then sleeps until its slot, outside the lock, so
    only the waiting task is suspended. With the reject policy a request whose
    slot is in the future fails immediately and reserves nothing.
    """

    def __init__(
        self,
        min_interval: float | None = None,
        wait: bool = False,
        manual_approve: bool = False,
        approver: Approver | None = None,
        approval_timeout: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval if min_interval and min_interval > 0 else None
        self.wait_policy = wait
        self.manual_approve = manual_approve
        self._approver = approver
        self._approval_timeout = approval_timeout
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.last_forwarded_at: float | None = None

        if manual_approve and approver is None:
            raise ValueError("manual_approve requires an approver")

    async def admit(self, request_id: str | None = None) -> AdmissionTicket:
        """Apply the rate limit. Raises RateLimitError under the reject policy."""
        ticket = AdmissionTicket(arrival_time=self._clock())
        if request_id:
            ticket.request_id = request_id

        if self.min_interval is None:
            ticket.decision = AdmissionDecision.APPROVE
            ticket.resolved_at = ticket.arrival_time
            return ticket

        async with self._lock:
            now = self._clock()
            slot = now
            if self.last_forwarded_at is not None:
                slot = max(now, self.last_forwarded_at + self.min_interval)
            delay = slot - now
            if delay > 0 and not self.wait_policy:
                logger.warning(
                    "Request %s rejected by rate limit, retry after %.1fs",
                    ticket.request_id,
                    delay,
                )
                ticket.decision = AdmissionDecision.REJECT
                ticket.resolved_at = now
                raise RateLimitError(retry_after=delay)
            self.last_forwarded_at = slot

        if delay > 0:
            logger.info(
                "Rate limit reached, request %s waits %.1fs", ticket.request_id, delay
            )
            ticket.decision = AdmissionDecision.WAIT
            await self._sleep(delay)

        ticket.decision = AdmissionDecision.APPROVE
        ticket.resolved_at = self._clock()
        return ticket

    async def approve(
        self, ticket: AdmissionTicket, summary: RequestSummary
    ) -> AdmissionDecision:
        """Ask the operator when manual approval is on. Timeout resolves to DENY."""
        if not self.manual_approve or self._approver is None:
            return AdmissionDecision.APPROVE

        try:
            approved = await asyncio.wait_for(
                self._approver.request_approval(summary), timeout=self._approval_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Approval for request %s timed out after %.0fs",
                ticket.request_id,
                self._approval_timeout,
            )
            approved = False

        decision = AdmissionDecision.APPROVE if approved else AdmissionDecision.DENY
        ticket.decision = decision
        ticket.resolved_at = self._clock()
        logger.info(
            "Request %s %s by operator", ticket.request_id, "approved" if approved else "denied"
        )
        return decision
