# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import dateutil.parser

from cmek_tests.testlib.encryption import EncryptionInfo


class StorageType(Enum):
    STORAGE_TYPE_UNSPECIFIED = "STORAGE_TYPE_UNSPECIFIED"
    SSD = "SSD"
    HDD = "HDD"


def last_name_segment(name):
    return name.rsplit('/', 1)[-1]


def parse_timestamp(s):
    if s is None:
        return None
    return dateutil.parser.isoparse(s)


def format_timestamp(t: datetime):
    return t.isoformat().replace('+00:00', 'Z')


@dataclass
class ClusterSpec:
    """What a caller asks for when creating a cluster"""
    cluster_id: str
    zone: str
    serve_nodes: int = 1
    storage_type: StorageType = StorageType.SSD
    kms_key_name: Optional[str] = None


@dataclass
class Instance:
    instance_id: str
    display_name: str
    state: str

    @staticmethod
    def from_json(json):
        return Instance(instance_id=last_name_segment(json['name']),
                        display_name=json.get('displayName', ''),
                        state=json.get('state', 'STATE_NOT_KNOWN'))


@dataclass
class Cluster:
    instance_id: str
    cluster_id: str
    zone: str
    serve_nodes: int
    storage_type: StorageType
    state: str
    kms_key_name: Optional[str] = None

    @staticmethod
    def from_json(json):
        # projects/<p>/instances/<i>/clusters/<c>
        segments = json['name'].split('/')
        encryption_config = json.get('encryptionConfig', {})
        return Cluster(
            instance_id=segments[3],
            cluster_id=segments[5],
            zone=last_name_segment(json.get('location', '')),
            serve_nodes=json.get('serveNodes', 0),
            storage_type=StorageType(json.get('defaultStorageType',
                                              'STORAGE_TYPE_UNSPECIFIED')),
            state=json.get('state', 'STATE_NOT_KNOWN'),
            kms_key_name=encryption_config.get('kmsKeyName'))


@dataclass
class Table:
    table_id: str
    column_families: List[str] = field(default_factory=list)

    @staticmethod
    def from_json(json):
        return Table(table_id=last_name_segment(json['name']),
                     column_families=sorted(json.get('columnFamilies', {})))


@dataclass
class Backup:
    cluster_id: str
    backup_id: str
    source_table_id: str
    expire_time: Optional[datetime]
    state: str
    encryption_info: Optional[EncryptionInfo]

    @staticmethod
    def from_json(json):
        # projects/<p>/instances/<i>/clusters/<c>/backups/<b>
        segments = json['name'].split('/')
        encryption_info = json.get('encryptionInfo')
        if encryption_info is not None:
            encryption_info = EncryptionInfo.from_json(encryption_info)
        return Backup(
            cluster_id=segments[5],
            backup_id=segments[7],
            source_table_id=last_name_segment(json.get('sourceTable', '')),
            expire_time=parse_timestamp(json.get('expireTime')),
            state=json.get('state', 'STATE_UNSPECIFIED'),
            encryption_info=encryption_info)


EncryptionInfos = Dict[str, List[EncryptionInfo]]
