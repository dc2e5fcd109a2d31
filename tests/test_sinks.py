"""Tests for lifecycle event sinks."""

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from escrow_loans.config import EscrowLoansConfig, KafkaConfig
from escrow_loans.exceptions import SinkError
from escrow_loans.models import LoanEvent, LoanStatus
from escrow_loans.sinks import ConsoleSink, create_sinks
from escrow_loans.sinks.serialization import encode_event, event_to_dict, to_jsonable


@pytest.fixture
def event() -> LoanEvent:
    return LoanEvent(
        event_id="evt-001",
        event_type="loan.collateral_locked",
        event_time=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        source="escrow-loans",
        subject="loan-test-001",
        data={"id": "loan-test-001", "status": "COLLATERAL_LOCKED", "escrow_sequence": 7},
        metadata={"previous_status": "OFFERED"},
    )


class TestSerialization:
    """Tests for event encoding."""

    def test_event_to_dict(self, event: LoanEvent) -> None:
        data = event_to_dict(event)

        assert data["event_type"] == "loan.collateral_locked"
        assert data["event_time"] == "2024-01-15T10:30:00+00:00"
        assert data["data"]["escrow_sequence"] == 7

    def test_encode_event_compact(self, event: LoanEvent) -> None:
        encoded = encode_event(event)

        assert "\n" not in encoded
        assert json.loads(encoded)["metadata"] == {"previous_status": "OFFERED"}

    def test_to_jsonable_values(self) -> None:
        assert to_jsonable(Decimal("5.2")) == "5.2"
        assert to_jsonable(LoanStatus.REPAID) == "REPAID"
        assert to_jsonable(date(2024, 1, 15)) == "2024-01-15"
        assert to_jsonable((1, Decimal("2"))) == [1, "2"]
        assert to_jsonable({"nested": {"amount": Decimal("1")}}) == {"nested": {"amount": "1"}}
        assert to_jsonable(None) is None

    def test_nested_dataclass(self) -> None:
        @dataclass
        class Ref:
            sequence: int
            tx_id: str

        assert to_jsonable(Ref(7, "TX")) == {"sequence": 7, "tx_id": "TX"}


class TestConsoleSink:
    """Tests for ConsoleSink."""

    def test_init_default(self) -> None:
        assert ConsoleSink().pretty is True

    def test_write(self, capsys: pytest.CaptureFixture, event: LoanEvent) -> None:
        sink = ConsoleSink(pretty=False)

        sink.write(event)

        line = capsys.readouterr().out.strip()
        assert json.loads(line)["subject"] == "loan-test-001"

    def test_write_pretty(self, capsys: pytest.CaptureFixture, event: LoanEvent) -> None:
        ConsoleSink(pretty=True).write(event)

        assert '\n  "event_id": "evt-001"' in capsys.readouterr().out

    def test_close_prints_counts(self, capsys: pytest.CaptureFixture, event: LoanEvent) -> None:
        sink = ConsoleSink(pretty=False)
        sink.write(event)
        sink.write(event)
        capsys.readouterr()

        sink.close()

        output = capsys.readouterr().out
        assert "1 loan(s), 2 event(s)" in output
        assert "loan.collateral_locked: 2" in output


class TestKafkaSinkMocked:
    """Tests for KafkaSink with a mocked producer."""

    def test_delivery_stats_in_flight(self) -> None:
        from escrow_loans.sinks.kafka import DeliveryStats

        assert DeliveryStats().in_flight == 0
        assert DeliveryStats(sent=5, delivered=3, failed=1).in_flight == 1

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_init_with_string(self, mock_producer_class: MagicMock) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        sink = KafkaSink("localhost:9092")

        assert sink.config.bootstrap_servers == "localhost:9092"
        assert sink.topic == "loans.lifecycle"
        mock_producer_class.assert_called_once_with(sink.config.to_dict())

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_init_with_config(self, mock_producer_class: MagicMock) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        sink = KafkaSink(KafkaConfig(bootstrap_servers="kafka:9092", topic="prod.loans"), topic="audit.loans")

        assert sink.topic == "audit.loans"

    def test_init_without_servers(self) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        with pytest.raises(SinkError):
            KafkaSink(KafkaConfig())

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_write_keys_by_loan(self, mock_producer_class: MagicMock, event: LoanEvent) -> None:
        """Test events are keyed by loan id so one loan stays ordered."""
        from escrow_loans.sinks.kafka import KafkaSink

        mock_producer = MagicMock()
        mock_producer_class.return_value = mock_producer
        sink = KafkaSink("localhost:9092")

        sink.write(event)

        call = mock_producer.produce.call_args
        assert call.args[0] == "loans.lifecycle"
        assert call.kwargs["key"] == "loan-test-001"
        assert call.kwargs["headers"] == [
            ("event_type", b"loan.collateral_locked"),
            ("event_id", b"evt-001"),
        ]
        assert json.loads(call.kwargs["value"])["metadata"] == {"previous_status": "OFFERED"}
        mock_producer.poll.assert_called_once_with(0)
        assert sink.stats.sent == 1

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_write_queue_full(self, mock_producer_class: MagicMock, event: LoanEvent) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        mock_producer = MagicMock()
        mock_producer.produce.side_effect = BufferError("Local: Queue full")
        mock_producer_class.return_value = mock_producer
        sink = KafkaSink("localhost:9092")

        with pytest.raises(SinkError, match="queue is full"):
            sink.write(event)
        assert sink.stats.sent == 0

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_delivery_reports(self, mock_producer_class: MagicMock) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        sink = KafkaSink("localhost:9092")
        mock_msg = MagicMock()
        mock_msg.topic.return_value = "loans.lifecycle"
        mock_msg.partition.return_value = 0
        mock_msg.offset.return_value = 1

        sink._on_delivery(None, mock_msg)
        sink._on_delivery("Connection error", None)

        assert sink.stats.delivered == 1
        assert sink.stats.failed == 1

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_close_flushes(self, mock_producer_class: MagicMock) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        mock_producer = MagicMock()
        mock_producer.flush.return_value = 0
        mock_producer_class.return_value = mock_producer
        sink = KafkaSink("localhost:9092")

        sink.close()

        mock_producer.flush.assert_called_once_with(30.0)


class TestCreateSinks:
    """Tests for sink selection."""

    def test_none_by_default(self) -> None:
        assert create_sinks(EscrowLoansConfig()) == []

    def test_console(self) -> None:
        sinks = create_sinks(EscrowLoansConfig(), console=True)

        assert len(sinks) == 1
        assert isinstance(sinks[0], ConsoleSink)

    @patch("escrow_loans.sinks.kafka.Producer")
    def test_kafka_when_configured(self, mock_producer_class: MagicMock) -> None:
        from escrow_loans.sinks.kafka import KafkaSink

        config = EscrowLoansConfig(kafka=KafkaConfig(bootstrap_servers="kafka:9092"))

        sinks = create_sinks(config)

        assert len(sinks) == 1
        assert isinstance(sinks[0], KafkaSink)
