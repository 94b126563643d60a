# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from cmek_tests.testlib import testlib

KEY_VERSION_NOT_YET_KNOWN = "Key version is not yet known."
KEY_VERSION_NOT_TRACKED = "Status of the associated key version is not tracked."


class StatusCode(Enum):
    """google.rpc.Code, as carried by encryptionStatus.code"""
    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class EncryptionType(Enum):
    ENCRYPTION_TYPE_UNSPECIFIED = "ENCRYPTION_TYPE_UNSPECIFIED"
    GOOGLE_DEFAULT_ENCRYPTION = "GOOGLE_DEFAULT_ENCRYPTION"
    CUSTOMER_MANAGED_ENCRYPTION = "CUSTOMER_MANAGED_ENCRYPTION"


class UnhandledEncryptionStateError(Exception):
    """Encryption metadata has a shape no check knows how to interpret"""
    pass


@dataclass(frozen=True)
class Status:
    code: StatusCode
    message: str = ''

    def __str__(self):
        return f'{self.code.name} "{self.message}"'

    @staticmethod
    def from_json(json):
        # proto3 JSON omits default values, so an absent code is OK
        code = json.get('code', 0)
        try:
            status_code = StatusCode(code)
        except ValueError:
            raise UnhandledEncryptionStateError(
                    f'unknown key status code: {code!r}') from None
        return Status(code=status_code, message=json.get('message', ''))


@dataclass(frozen=True)
class EncryptionInfo:
    type: EncryptionType
    kms_key_version: str
    status: Status

    @staticmethod
    def from_json(json):
        encryption_type = json.get('encryptionType',
                                   'ENCRYPTION_TYPE_UNSPECIFIED')
        try:
            encryption_type = EncryptionType(encryption_type)
        except ValueError:
            raise UnhandledEncryptionStateError(
                    f'unknown encryption type: {encryption_type!r}') from None
        return EncryptionInfo(
            type=encryption_type,
            kms_key_version=json.get('kmsKeyVersion', ''),
            status=Status.from_json(json.get('encryptionStatus', {})))


def encryption_infos_from_table_json(table_json) -> Dict[str, List[EncryptionInfo]]:
    """Builds the cluster id -> encryption infos mapping of a table

    The table must have been read with ENCRYPTION_VIEW (or FULL), otherwise
    clusterStates carry no encryptionInfo.
    """
    cluster_states = table_json.get('clusterStates', {})
    return {cluster_id: [EncryptionInfo.from_json(i)
                         for i in state.get('encryptionInfo', [])]
            for cluster_id, state in cluster_states.items()}


def single_encryption_info(encryption_infos, cluster_id):
    infos = encryption_infos.get(cluster_id)
    if infos is None:
        raise UnhandledEncryptionStateError(
            f'no encryption info for cluster {cluster_id}, '
            f'got clusters: {sorted(encryption_infos.keys())}')
    if len(infos) != 1:
        raise UnhandledEncryptionStateError(
            f'expected exactly one encryption info for cluster {cluster_id}, '
            f'got {len(infos)}: {infos}')
    return infos[0]


def assert_table_encryption_info(info, kms_key_name, expect_converged=False):
    testlib.assert_eq(info.type, EncryptionType.CUSTOMER_MANAGED_ENCRYPTION,
                      name='encryption type')
    if info.status.code not in (StatusCode.OK, StatusCode.UNKNOWN):
        raise UnhandledEncryptionStateError(
            f'unexpected key status for a table: {info.status}')
    if expect_converged:
        testlib.assert_eq(info.status.code, StatusCode.OK,
                          name='key status code')

    # For up to several minutes after a table is created its key version
    # and status are not populated yet
    if info.status.code == StatusCode.UNKNOWN:
        testlib.assert_eq(info.kms_key_version, '', name='key version')
        testlib.assert_eq(info.status.message, KEY_VERSION_NOT_YET_KNOWN,
                          name='key status message')
    else:
        testlib.assert_startswith(info.kms_key_version, kms_key_name,
                                  name='key version')
        testlib.assert_eq(info.status.message, '', name='key status message')


def assert_backup_encryption_info(info, kms_key_name):
    # Backups are pinned to the key version that was primary when they were
    # taken, and the status of that version is never tracked
    testlib.assert_startswith(info.kms_key_version, kms_key_name,
                              name='backup key version')
    testlib.assert_eq(info.status.code, StatusCode.UNKNOWN,
                      name='backup key status code')
    testlib.assert_eq(info.type, EncryptionType.CUSTOMER_MANAGED_ENCRYPTION,
                      name='backup encryption type')
    testlib.assert_eq(info.status.message, KEY_VERSION_NOT_TRACKED,
                      name='backup key status message')
