import random

from src.timetable.utils import (
    SCHEDULE_REFERER,
    STEALTH_HEADERS,
    USER_AGENTS,
    generate_headers,
    settle_delay,
)


def test_headers_without_stealth():
    headers = generate_headers(random.Random(3), stealth_probability=0)
    assert headers["User-Agent"] in USER_AGENTS
    assert headers["Referer"] == SCHEDULE_REFERER
    assert set(headers) == {"User-Agent", "Referer"}


def test_headers_with_full_stealth():
    headers = generate_headers(random.Random(3), stealth_probability=1)
    assert set(STEALTH_HEADERS) <= set(headers)
    for name, values in STEALTH_HEADERS.items():
        assert headers[name] in values


def test_user_agent_rotates():
    rng = random.Random(7)
    agents = {generate_headers(rng)["User-Agent"] for _ in range(50)}
    assert len(agents) > 1


def test_settle_delay_bounds():
    rng = random.Random(1)
    delays = [settle_delay(rng, 0.5, 2.0) for _ in range(20)]
    assert all(0.5 <= delay <= 2.0 for delay in delays)
    assert settle_delay(rng, 0, 0) == 0
