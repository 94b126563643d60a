import pytest

from cmek_tests.testlib.admin import ApiError
from cmek_tests.testlib.convergence import BACKOFF_SCHEDULE, \
    CmekStatusPoller, ConvergenceTimeoutError, Fail, PollerState, Return, \
    Sleep, wait_for_cmek_status
from cmek_tests.testlib.encryption import EncryptionInfo, EncryptionType, \
    KEY_VERSION_NOT_YET_KNOWN, Status, StatusCode, \
    UnhandledEncryptionStateError

KEY = 'projects/p/locations/us-central1/keyRings/r/cryptoKeys/k'

PENDING_INFO = EncryptionInfo(EncryptionType.CUSTOMER_MANAGED_ENCRYPTION, '',
                              Status(StatusCode.UNKNOWN,
                                     KEY_VERSION_NOT_YET_KNOWN))
OK_INFO = EncryptionInfo(EncryptionType.CUSTOMER_MANAGED_ENCRYPTION,
                         f'{KEY}/cryptoKeyVersions/1', Status(StatusCode.OK))


def infos_fetcher(observations, cluster_id='c1'):
    """Returns a fetch function replaying observations, one per call"""
    calls = []

    def fetch():
        calls.append(1)
        observation = observations[min(len(calls), len(observations)) - 1]
        if isinstance(observation, Exception):
            raise observation
        return {cluster_id: [observation]}
    fetch.calls = calls
    return fetch


def test_default_schedule():
    assert BACKOFF_SCHEDULE == (5, 10, 50, 100, 150, 200, 250, 300)
    assert CmekStatusPoller().schedule == BACKOFF_SCHEDULE


def test_empty_schedule_is_rejected():
    with pytest.raises(ValueError):
        CmekStatusPoller(())


def test_step_sleeps_following_schedule():
    poller = CmekStatusPoller((1, 2, 3))
    assert poller.step(PENDING_INFO) == Sleep(1)
    assert poller.step(PENDING_INFO) == Sleep(2)
    assert poller.state == PollerState.PENDING
    assert poller.attempts == 2


def test_step_returns_ok_info():
    poller = CmekStatusPoller((1, 2, 3))
    assert poller.step(PENDING_INFO) == Sleep(1)
    assert poller.step(OK_INFO) == Return(OK_INFO)
    assert poller.state == PollerState.CONVERGED


def test_converged_is_terminal():
    poller = CmekStatusPoller((1, 2))
    poller.step(OK_INFO)
    attempts = poller.attempts
    # Later observations don't change the outcome
    assert poller.step(PENDING_INFO) == Return(OK_INFO)
    assert poller.step(ApiError('UNAVAILABLE', 'down')) == Return(OK_INFO)
    assert poller.attempts == attempts


def test_no_sleep_after_last_attempt():
    poller = CmekStatusPoller((1, 2, 3))
    actions = [poller.step(PENDING_INFO) for _ in range(3)]
    assert actions[:2] == [Sleep(1), Sleep(2)]
    assert isinstance(actions[2], Fail)
    assert 'after 3 attempts' in actions[2].reason


def test_exhausted_poller_keeps_failing():
    poller = CmekStatusPoller((1,))
    assert isinstance(poller.step(PENDING_INFO), Fail)
    assert isinstance(poller.step(OK_INFO), Fail)
    assert poller.attempts == 1


def test_api_error_is_an_observation():
    poller = CmekStatusPoller((1, 2))
    error = ApiError('UNAVAILABLE', 'try again')
    assert poller.step(error) == Sleep(1)
    assert poller.last_observation is error


def test_non_ok_code_keeps_polling():
    poller = CmekStatusPoller((4, 5))
    info = EncryptionInfo(EncryptionType.CUSTOMER_MANAGED_ENCRYPTION, '',
                          Status(StatusCode.FAILED_PRECONDITION, 'disabled'))
    assert poller.step(info) == Sleep(4)


def test_wait_returns_when_converged(sleeps):
    fetch = infos_fetcher([PENDING_INFO, PENDING_INFO, OK_INFO])
    info = wait_for_cmek_status(fetch, 't', 'c1', schedule=(1, 2, 3, 4),
                                sleep=sleeps)
    assert info == OK_INFO
    assert len(fetch.calls) == 3
    assert sleeps.calls == [1, 2]


def test_wait_converged_on_first_fetch_does_not_sleep(sleeps):
    fetch = infos_fetcher([OK_INFO])
    assert wait_for_cmek_status(fetch, 't', 'c1', schedule=(1, 2),
                                sleep=sleeps) == OK_INFO
    assert sleeps.calls == []


def test_wait_times_out(sleeps):
    schedule = (1, 2, 3, 4)
    fetch = infos_fetcher([PENDING_INFO])
    with pytest.raises(ConvergenceTimeoutError) as e:
        wait_for_cmek_status(fetch, 'my-table', 'c1', schedule=schedule,
                             sleep=sleeps)
    assert len(fetch.calls) == len(schedule)
    assert sleeps.calls == [1, 2, 3]
    assert 'my-table' in str(e.value)
    assert 'failed to return' in str(e.value)


def test_wait_retries_api_errors(sleeps):
    fetch = infos_fetcher([ApiError('UNAVAILABLE', 'down'),
                           ApiError('INTERNAL', 'oops'),
                           OK_INFO])
    assert wait_for_cmek_status(fetch, 't', 'c1', schedule=(1, 2, 3),
                                sleep=sleeps) == OK_INFO
    assert sleeps.calls == [1, 2]


def test_wait_propagates_missing_cluster(sleeps):
    fetch = infos_fetcher([OK_INFO], cluster_id='other')
    with pytest.raises(UnhandledEncryptionStateError):
        wait_for_cmek_status(fetch, 't', 'c1', schedule=(1, 2), sleep=sleeps)
    assert sleeps.calls == []


def test_wait_uses_given_poller(sleeps):
    poller = CmekStatusPoller((7, 8))
    fetch = infos_fetcher([PENDING_INFO, OK_INFO])
    wait_for_cmek_status(fetch, 't', 'c1', sleep=sleeps, poller=poller)
    assert sleeps.calls == [7]
    assert poller.state == PollerState.CONVERGED
