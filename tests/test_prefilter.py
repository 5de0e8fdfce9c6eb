from gatekeeper.prefilter import ValidationThrottle


def test_allows_up_to_limit_per_window():
    t = ValidationThrottle(limit=3, window=60)
    assert [t.allow("1.2.3.4", now=100 + i) for i in range(4)] == [True, True, True, False]
    # другой клиент не задет
    assert t.allow("5.6.7.8", now=103)


def test_window_slides():
    t = ValidationThrottle(limit=2, window=60)
    assert t.allow("c", now=0)
    assert t.allow("c", now=30)
    assert not t.allow("c", now=59)
    assert t.allow("c", now=60)


def test_forget_clears_history():
    t = ValidationThrottle(limit=1, window=60)
    assert t.allow("c", now=0)
    assert not t.allow("c", now=1)
    t.forget("c")
    assert t.allow("c", now=2)


def test_idle_clients_are_dropped():
    t = ValidationThrottle(limit=5, window=60)
    for i in range(100):
        assert t.allow(f"10.0.0.{i}", now=1000)
    assert len(t) == 100
    assert t.allow("10.0.1.1", now=1100)
    assert len(t) == 1
