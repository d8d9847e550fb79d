# tests/test_retry.py
from unittest.mock import MagicMock

import pytest

from storia.errors import InvalidResponseError, RetryExhaustedError, UpstreamUnavailableError
from storia.retry import RetryPolicy, call_with_retry


def make_policy(sleeps, **kwargs):
    return RetryPolicy(jitter=0.0, sleep=sleeps.append, **kwargs)


def test_delay_crece_exponencialmente():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, jitter=0.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_jitter_se_mantiene_en_el_rango():
    policy = RetryPolicy(base_delay=2.0, jitter=0.25)
    for _ in range(50):
        assert 1.5 <= policy.delay_for(1) <= 2.5


def test_reintenta_hasta_el_limite_y_conserva_el_ultimo_error():
    sleeps = []
    func   = MagicMock(side_effect=UpstreamUnavailableError("503"))

    with pytest.raises(RetryExhaustedError) as exc:
        call_with_retry(func, make_policy(sleeps, max_attempts=3))

    assert func.call_count == 3
    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, UpstreamUnavailableError)
    assert len(sleeps) == 2   # no se duerme después del último intento


def test_error_no_retryable_se_propaga_al_primer_intento():
    sleeps = []
    func   = MagicMock(side_effect=InvalidResponseError("basura"))

    with pytest.raises(InvalidResponseError):
        call_with_retry(func, make_policy(sleeps))

    assert func.call_count == 1
    assert sleeps == []


def test_on_attempt_recibe_cada_intento():
    attempts = []
    func     = MagicMock(side_effect=[UpstreamUnavailableError("503"), "ok"])

    result = call_with_retry(func, make_policy([]), on_attempt=attempts.append)

    assert result == "ok"
    assert attempts == [1, 2]
