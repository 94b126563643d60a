# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from abc import ABC, abstractmethod

from cmek_tests.testlib.env import TestEnv


class Requirement(ABC):
    """A property of the TestEnv a testset depends on

    Subclasses set name and implement observe(), returning the value of the
    property in a given env. The requirement is met when it equals expected.
    """
    name = None

    def __init__(self, expected):
        self.expected = expected

    def __str__(self):
        return f'{self.name}={self.expected}'

    def __repr__(self):
        return f'{type(self).__name__}({self.expected!r})'

    def __eq__(self, other):
        return type(self) == type(other) and self.expected == other.expected

    @abstractmethod
    def observe(self, env: TestEnv):
        raise NotImplementedError()

    def is_met(self, env: TestEnv):
        return self.observe(env) == self.expected


class Project(Requirement):
    name = 'project'

    def observe(self, env):
        return env.project_id is not None


class KmsKey(Requirement):
    name = 'kms_key'

    def observe(self, env):
        return bool(env.kms_key_name)


class Emulator(Requirement):
    name = 'emulator'

    def observe(self, env):
        return env.is_emulator()


class DistinctRegions(Requirement):
    """Both primary zones are in one region, the secondary zone is not"""
    name = 'distinct_regions'

    def observe(self, env):
        primary = zone_region(env.primary_zone)
        return env.primary_zone != env.primary_region_second_zone and \
            zone_region(env.primary_region_second_zone) == primary and \
            zone_region(env.secondary_zone) != primary


class EnvRequirements:
    kinds = {cls.name: cls for cls in (Project, KmsKey, Emulator,
                                       DistinctRegions)}

    def __init__(self, **expected):
        unknown = set(expected) - set(self.kinds)
        assert not unknown, f'unknown requirements: {sorted(unknown)}'
        self.requirements = [self.kinds[name](value)
                             for name, value in sorted(expected.items())
                             if value is not None]

    def __str__(self):
        return ', '.join(str(r) for r in self.requirements)

    def __repr__(self):
        return f'EnvRequirements({self})'

    def as_list(self):
        return list(self.requirements)

    def get_unmet_requirements(self, env: TestEnv):
        return [r for r in self.requirements if not r.is_met(env)]


def zone_region(zone):
    # us-central1-b -> us-central1
    return zone.rsplit('-', 1)[0]
