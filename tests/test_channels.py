import logging

import pytest

from src.processing.channels import BoundedChannel


def test_publish_fans_out_and_buffers():
    ch = BoundedChannel("events", capacity=3)
    a, b = [], []
    ch.subscribe(a.append)
    unsubscribe = ch.subscribe(b.append)
    ch.publish(1)
    unsubscribe()
    ch.publish(2)
    assert a == [1, 2]
    assert b == [1]
    assert len(ch) == 2
    assert ch.drain() == [1, 2]
    assert len(ch) == 0


def test_oldest_items_are_evicted():
    ch = BoundedChannel("snapshots", capacity=2)
    for i in range(5):
        ch.publish(i)
    assert ch.drain() == [3, 4]
    assert ch.published == 5
    assert ch.evicted == 3


def test_failing_subscriber_does_not_stop_delivery(caplog):
    ch = BoundedChannel("events")
    got = []

    def boom(_item):
        raise RuntimeError("subscriber bug")

    ch.subscribe(boom)
    ch.subscribe(got.append)
    with caplog.at_level(logging.ERROR):
        ch.publish("x")
    assert got == ["x"]
    assert "subscriber on channel 'events' failed" in caplog.text


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BoundedChannel("bad", capacity=0)
