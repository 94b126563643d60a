import pytest

from cmek_tests.testlib import testlib
from cmek_tests.testlib.env import TestEnv
from fake_bigtable import FakeBigtable, FakeBigtableSession

PROJECT_ID = 'test-project'
KMS_KEY_NAME = f'projects/{PROJECT_ID}/locations/us-central1/keyRings/' \
               f'test-ring/cryptoKeys/test-key'


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, duration):
        self.calls.append(duration)

    @property
    def total(self):
        return sum(self.calls)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def bigtable():
    return FakeBigtable(project_id=PROJECT_ID)


@pytest.fixture
def env(bigtable):
    return TestEnv(project_id=PROJECT_ID,
                   kms_key_name=KMS_KEY_NAME,
                   admin_endpoint='https://bigtableadmin.example.test',
                   backoff_schedule=(1, 2, 3, 4),
                   session=FakeBigtableSession(bigtable))


@pytest.fixture
def admin(env):
    return env.get_admin_client()


@pytest.fixture(autouse=True)
def quiet_config():
    saved = dict(testlib.config)
    testlib.config.update({'colors': False, 'verbose': False})
    yield
    testlib.config.clear()
    testlib.config.update(saved)
