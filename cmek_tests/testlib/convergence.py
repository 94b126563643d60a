# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
"""Waiting for the key status of a CMEK protected table to converge

Right after a table is created, the encryption info of each of its clusters
reports UNKNOWN with an empty key version. It takes the service up to several
minutes to populate both. The poller below re-reads the encryption info of one
cluster following a fixed backoff schedule until the status is OK.

The transition logic (CmekStatusPoller) doesn't do any IO or sleeping itself,
it only decides what to do after each observation. wait_for_cmek_status()
drives it with the real admin calls and time.sleep().
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Tuple, Union

from cmek_tests.testlib import testlib
from cmek_tests.testlib.admin import ApiError
from cmek_tests.testlib.encryption import EncryptionInfo, StatusCode, \
    single_encryption_info

# seconds, ~18.5 minutes in total
BACKOFF_SCHEDULE = (5, 10, 50, 100, 150, 200, 250, 300)


class ConvergenceTimeoutError(Exception):
    pass


class PollerState(Enum):
    PENDING = "pending"
    CONVERGED = "converged"


@dataclass(frozen=True)
class Return:
    info: EncryptionInfo


@dataclass(frozen=True)
class Sleep:
    duration: float


@dataclass(frozen=True)
class Fail:
    reason: str


NextAction = Union[Return, Sleep, Fail]
Observation = Union[EncryptionInfo, ApiError]


class CmekStatusPoller:
    def __init__(self, schedule: Sequence[float] = BACKOFF_SCHEDULE):
        if len(schedule) == 0:
            raise ValueError("backoff schedule must not be empty")
        self.schedule: Tuple[float, ...] = tuple(schedule)
        self.state = PollerState.PENDING
        self.attempts = 0
        self.last_observation = None
        self.converged_info = None

    def step(self, observation: Observation) -> NextAction:
        """Consumes the result of one fetch and returns what to do next

        observation is either the EncryptionInfo of the cluster, or the
        ApiError the fetch failed with.
        """
        if self.state == PollerState.CONVERGED:
            return Return(self.converged_info)

        if self.attempts >= len(self.schedule):
            return self._fail()

        step_index = self.attempts
        self.attempts += 1
        self.last_observation = observation

        if isinstance(observation, EncryptionInfo) and \
           observation.status.code == StatusCode.OK:
            self.state = PollerState.CONVERGED
            self.converged_info = observation
            return Return(observation)

        if self.attempts == len(self.schedule):
            return self._fail()

        return Sleep(self.schedule[step_index])

    def _fail(self):
        return Fail(f'key status did not become OK after {self.attempts} '
                    f'attempts (schedule: {list(self.schedule)}s), '
                    f'last observation: {self.last_observation}')


def observe(fetch, cluster_id) -> Observation:
    try:
        return single_encryption_info(fetch(), cluster_id)
    except ApiError as e:
        return e


def wait_for_cmek_status(fetch, table_id, cluster_id,
                         schedule=BACKOFF_SCHEDULE, sleep=time.sleep,
                         poller=None):
    """Blocks until the key status of table_id in cluster_id is OK

    fetch is a no-argument function returning the cluster id -> encryption
    infos mapping of the table. API errors raised by fetch are expected while
    the status hasn't converged yet, they are reported and retried. Raises
    ConvergenceTimeoutError when the schedule is exhausted.
    """
    if poller is None:
        poller = CmekStatusPoller(schedule)
    start_time = time.time()
    while True:
        observation = observe(fetch, cluster_id)
        action = poller.step(observation)
        if isinstance(action, Return):
            testlib.maybe_print(f'Key status for table {table_id} and '
                                f'cluster {cluster_id} converged after '
                                f'{poller.attempts} attempts '
                                f'({time.time() - start_time:.1f}s)')
            return action.info
        if isinstance(action, Fail):
            raise ConvergenceTimeoutError(
                    f'CMEK key status for table {table_id} and cluster '
                    f'{cluster_id} failed to return: {action.reason}')
        if isinstance(observation, ApiError):
            print(f'Got {observation} while reading key status, wait for '
                  f'{action.duration} seconds for key status for table '
                  f'{table_id} and cluster {cluster_id}')
        else:
            print(f'Key status is {observation.status}, wait for '
                  f'{action.duration} seconds for key status for table '
                  f'{table_id} and cluster {cluster_id}')
        sleep(action.duration)
