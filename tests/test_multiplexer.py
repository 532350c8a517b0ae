import pytest

from tandem.chat.multiplexer import ResponseMultiplexer, ResponseSubscriber


class Collector:
    def __init__(self, fail: bool = False):
        self.chunks: list[str] = []
        self.completed = 0
        self.fail = fail

    async def on_response(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("handler failed")
        self.chunks.append(text)

    async def on_turn_complete(self) -> None:
        self.completed += 1

    def subscriber(self) -> ResponseSubscriber:
        return ResponseSubscriber(self.on_response, self.on_turn_complete)


@pytest.mark.asyncio
async def test_default_topic_receives_chunks_in_order():
    mux = ResponseMultiplexer()
    assistant = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, assistant.subscriber())

    await mux.publish("Hel")
    await mux.publish("lo")
    await mux.notify_turn_complete()

    assert "".join(assistant.chunks) == "Hello"
    assert assistant.completed == 1


@pytest.mark.asyncio
async def test_topic_markers_route_to_subscribers():
    mux = ResponseMultiplexer()
    assistant = Collector()
    thought = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, assistant.subscriber())
    mux.sub("Thought", thought.subscriber())

    await mux.publish("Hi <Tho")
    await mux.publish("ught>think</Th")
    await mux.publish("ought> there")
    await mux.notify_turn_complete()

    assert "".join(assistant.chunks) == "Hi  there"
    assert thought.chunks == ["think"]
    assert assistant.completed == 1
    assert thought.completed == 1


@pytest.mark.asyncio
async def test_unsubscribed_topic_text_stays_in_default():
    mux = ResponseMultiplexer()
    assistant = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, assistant.subscriber())

    await mux.publish("a <Thought>b</Thought>")
    await mux.notify_turn_complete()

    assert "".join(assistant.chunks) == "a <Thought>b</Thought>"


@pytest.mark.asyncio
async def test_held_partial_marker_is_flushed_on_completion():
    mux = ResponseMultiplexer()
    assistant = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, assistant.subscriber())
    mux.sub("Thought", Collector().subscriber())

    await mux.publish("a <Th")
    assert assistant.chunks == ["a "]

    await mux.notify_turn_complete()
    assert assistant.chunks == ["a ", "<Th"]


@pytest.mark.asyncio
async def test_turn_completion_is_idempotent():
    mux = ResponseMultiplexer()
    assistant = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, assistant.subscriber())

    await mux.publish("done")
    await mux.notify_turn_complete()
    await mux.notify_turn_complete()
    await mux.publish("late")

    assert assistant.chunks == ["done"]
    assert assistant.completed == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_others():
    mux = ResponseMultiplexer()
    broken = Collector(fail=True)
    thought = Collector()
    mux.sub(ResponseMultiplexer.DEFAULT_TOPIC, broken.subscriber())
    mux.sub("Thought", thought.subscriber())

    await mux.publish("x<Thought>y</Thought>")
    await mux.notify_turn_complete()

    assert thought.chunks == ["y"]
    assert broken.completed == 1
    assert thought.completed == 1
