"""
Scheduler metrics using the OpenTelemetry metrics API.

Instruments come from the global meter provider and are no-ops until
telemetry is initialized.
"""

from typing import Optional

from opentelemetry import metrics


class SchedulerMetrics:
    """Counters and histograms for rounds, turns, budgets and approvals."""

    def __init__(self, meter: Optional[metrics.Meter] = None):
        self.meter = meter or metrics.get_meter("huddle")
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        self.rounds = self.meter.create_counter(
            name="huddle_rounds_total",
            description="Rounds processed by conversation mode",
            unit="1"
        )

        self.turns = self.meter.create_counter(
            name="huddle_turns_total",
            description="Agent turns by final message status",
            unit="1"
        )

        self.turn_tokens = self.meter.create_histogram(
            name="huddle_turn_tokens",
            description="Tokens consumed per agent turn",
            unit="1"
        )

        self.budget_rejections = self.meter.create_counter(
            name="huddle_budget_rejections_total",
            description="Admission rejections by reason",
            unit="1"
        )

        self.approval_decisions = self.meter.create_counter(
            name="huddle_approval_decisions_total",
            description="Approval decisions by kind, outcome and decider",
            unit="1"
        )

        self.compactions = self.meter.create_counter(
            name="huddle_compactions_total",
            description="Checkpoints written by compaction",
            unit="1"
        )

    def record_round(self, mode: str, target_count: int) -> None:
        self.rounds.add(1, {"mode": mode, "fan_out": str(target_count)})

    def record_turn(self, agent_id: str, status: str, tokens: Optional[int] = None) -> None:
        self.turns.add(1, {"agent_id": agent_id, "status": status})
        if tokens is not None:
            self.turn_tokens.record(tokens, {"agent_id": agent_id})

    def record_budget_rejection(self, agent_id: str, reason: str) -> None:
        self.budget_rejections.add(1, {"agent_id": agent_id, "reason": reason})

    def record_approval(self, kind: str, approved: bool, decided_by: str) -> None:
        self.approval_decisions.add(1, {
            "kind": kind,
            "result": "approved" if approved else "denied",
            "decided_by": decided_by
        })

    def record_compaction(self, summarized: bool) -> None:
        self.compactions.add(1, {"summarized": str(summarized).lower()})
