# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession

from cmek_tests.testlib.admin import AdminClient, DEFAULT_ENDPOINT
from cmek_tests.testlib.convergence import BACKOFF_SCHEDULE

ADMIN_SCOPES = ['https://www.googleapis.com/auth/bigtable.admin',
                'https://www.googleapis.com/auth/cloud-platform']

TRUE_STRINGS = ('1', 'true', 'yes', 'on')


def parse_bool(s):
    return s.strip().lower() in TRUE_STRINGS


def parse_schedule(s):
    return tuple(float(x) for x in s.split(',') if x.strip() != '')


@dataclass(frozen=True)
class TestEnv:
    """Everything the CMEK testsets need to know about where they run

    The key must be a regional key; primary_zone and
    primary_region_second_zone must be in the key's region while
    secondary_zone must be in a different one.
    """
    project_id: Optional[str] = None
    kms_key_name: Optional[str] = None
    primary_zone: str = 'us-central1-b'
    primary_region_second_zone: str = 'us-central1-c'
    secondary_zone: str = 'us-east1-b'
    wait_for_cmek_key_status: bool = False
    admin_endpoint: str = DEFAULT_ENDPOINT
    emulator_host: Optional[str] = None
    instance_prefix: str = 'cmek-it-'
    backoff_schedule: Tuple[float, ...] = field(default=BACKOFF_SCHEDULE)
    session: Optional[requests.Session] = field(default=None, compare=False,
                                                repr=False)

    # Tells pytest this is not a test class
    __test__ = False

    @staticmethod
    def from_environ(environ=None):
        if environ is None:
            environ = os.environ
        kwargs = {}
        for var, key, conv in [
                ('BIGTABLE_PROJECT_ID', 'project_id', str),
                ('BIGTABLE_KMS_KEY_NAME', 'kms_key_name', str),
                ('BIGTABLE_PRIMARY_ZONE', 'primary_zone', str),
                ('BIGTABLE_PRIMARY_REGION_SECOND_ZONE',
                 'primary_region_second_zone', str),
                ('BIGTABLE_SECONDARY_ZONE', 'secondary_zone', str),
                ('BIGTABLE_WAIT_FOR_CMEK_KEY_STATUS',
                 'wait_for_cmek_key_status', parse_bool),
                ('BIGTABLE_ADMIN_ENDPOINT', 'admin_endpoint', str),
                ('BIGTABLE_EMULATOR_HOST', 'emulator_host', str),
                ('BIGTABLE_INSTANCE_PREFIX', 'instance_prefix', str),
                ('BIGTABLE_CMEK_BACKOFF_SCHEDULE', 'backoff_schedule',
                 parse_schedule)]:
            value = environ.get(var)
            if value:
                kwargs[key] = conv(value)
        return TestEnv(**kwargs)

    def with_overrides(self, **overrides):
        return replace(self, **{k: v for k, v in overrides.items()
                                if v is not None})

    def is_emulator(self):
        return self.emulator_host is not None

    def short_name(self):
        if self.is_emulator():
            return f'emulator({self.emulator_host})'
        return f'{self.project_id}'

    def get_session(self):
        if self.session is not None:
            return self.session
        if self.is_emulator():
            return requests.Session()
        credentials, _ = google.auth.default(scopes=ADMIN_SCOPES)
        return AuthorizedSession(credentials)

    def get_admin_client(self):
        endpoint = self.admin_endpoint
        if self.is_emulator():
            endpoint = f'http://{self.emulator_host}'
        return AdminClient(self.project_id, self.get_session(),
                           endpoint=endpoint)
