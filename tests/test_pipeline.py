"""Tests for agentterm.pty.pipeline.OutputPipeline."""

from __future__ import annotations

from agentterm.pty.pipeline import OutputPipeline


class TestOutputDelivery:
    def test_delivers_in_subscription_order(self) -> None:
        pipeline = OutputPipeline()
        seen: list[tuple[str, bytes]] = []
        pipeline.subscribe(lambda d: seen.append(("a", d)))
        pipeline.subscribe(lambda d: seen.append(("b", d)))
        pipeline.publish(b"x")
        pipeline.publish(b"y")
        assert seen == [("a", b"x"), ("b", b"x"), ("a", b"y"), ("b", b"y")]

    def test_unsubscribe_via_returned_function(self) -> None:
        pipeline = OutputPipeline()
        seen: list[bytes] = []
        unsubscribe = pipeline.subscribe(seen.append)
        pipeline.publish(b"1")
        unsubscribe()
        pipeline.publish(b"2")
        assert seen == [b"1"]
        assert pipeline.subscriber_count == 0

    def test_unsubscribe_unknown_is_safe(self) -> None:
        OutputPipeline().unsubscribe(lambda d: None)

    def test_failing_handler_does_not_stop_others(self) -> None:
        pipeline = OutputPipeline()
        seen: list[bytes] = []

        def boom(data: bytes) -> None:
            raise RuntimeError("boom")

        pipeline.subscribe(boom)
        pipeline.subscribe(seen.append)
        pipeline.publish(b"data")
        assert seen == [b"data"]

    def test_handler_may_unsubscribe_itself(self) -> None:
        pipeline = OutputPipeline()
        seen: list[bytes] = []
        unsubscribe = None

        def once(data: bytes) -> None:
            seen.append(data)
            unsubscribe()

        unsubscribe = pipeline.subscribe(once)
        pipeline.publish(b"1")
        pipeline.publish(b"2")
        assert seen == [b"1"]

    def test_empty_chunk_ignored(self) -> None:
        pipeline = OutputPipeline()
        seen: list[bytes] = []
        pipeline.subscribe(seen.append)
        pipeline.publish(b"")
        assert seen == []


class TestExit:
    def test_exit_fires_once(self) -> None:
        pipeline = OutputPipeline()
        exits: list[int | None] = []
        pipeline.on_exit(exits.append)
        pipeline.close(3)
        pipeline.close(4)
        assert exits == [3]
        assert pipeline.closed
        assert pipeline.exit_code == 3

    def test_on_exit_after_close_fires_immediately(self) -> None:
        pipeline = OutputPipeline()
        pipeline.close(None)
        exits: list[int | None] = []
        pipeline.on_exit(exits.append)
        assert exits == [None]

    def test_removed_exit_handler_not_called(self) -> None:
        pipeline = OutputPipeline()
        exits: list[int | None] = []
        remove = pipeline.on_exit(exits.append)
        remove()
        pipeline.close(0)
        assert exits == []

    def test_publish_after_close_dropped(self) -> None:
        pipeline = OutputPipeline()
        seen: list[bytes] = []
        pipeline.subscribe(seen.append)
        pipeline.close(0)
        pipeline.publish(b"late")
        assert seen == []
        assert pipeline.subscriber_count == 0

    def test_failing_exit_handler_does_not_stop_others(self) -> None:
        pipeline = OutputPipeline()
        exits: list[int | None] = []

        def boom(code: int | None) -> None:
            raise RuntimeError("boom")

        pipeline.on_exit(boom)
        pipeline.on_exit(exits.append)
        pipeline.close(1)
        assert exits == [1]
