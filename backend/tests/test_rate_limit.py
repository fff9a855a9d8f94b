from learning_platform.utils.rate_limit import LoginThrottle


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_window_blocks_then_recovers():
    clock = FakeClock()
    throttle = LoginThrottle(clock=clock)
    assert throttle.hit('k', 2, 60) == (True, 0)
    assert throttle.hit('k', 2, 60) == (True, 0)
    allowed, retry_after = throttle.hit('k', 2, 60)
    assert not allowed
    assert retry_after == 60
    clock.now += 60
    assert throttle.hit('k', 2, 60) == (True, 0)


def test_keys_are_independent():
    throttle = LoginThrottle(clock=FakeClock())
    assert throttle.hit('a', 1, 60)[0]
    assert not throttle.hit('a', 1, 60)[0]
    assert throttle.hit('b', 1, 60)[0]
    throttle.reset()
    assert throttle.hit('a', 1, 60)[0]
