# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
import time
from datetime import datetime, timedelta, timezone

from cmek_tests.testlib import testlib
from cmek_tests.testlib import convergence
from cmek_tests.testlib.admin import FailedPreconditionError, ensure_deleted
from cmek_tests.testlib.encryption import assert_backup_encryption_info, \
    assert_table_encryption_info, single_encryption_info
from cmek_tests.testlib.models import ClusterSpec, StorageType

TEST_TABLE_ID = 'test-table-for-cmek-it'
BACKUP_ID = 'test-table-for-cmek-it-backup'
COLUMN_FAMILY = 'cf'
BACKUP_TTL = timedelta(hours=6)


def new_instance_id(prefix):
    # Instance ids are limited to 33 characters and cluster ids (which get
    # a -cN suffix) to 30
    return f'{prefix}{int(time.time())}-{testlib.random_str(3)}'


def expected_precondition_message(kms_key_name, location_name):
    return "FAILED_PRECONDITION: Error in field 'cluster' : " \
           "Error in field 'encryption_config.kms_key_name' : " \
           f"CMEK key {kms_key_name} cannot be used to protect a cluster " \
           f"in zone {location_name}"


class CmekLifecycle:
    """Creates CMEK protected resources and checks their encryption info

    One object per scenario: it owns a single instance (named after the
    creation time) and everything created in it. cleanup() removes all of it.
    """

    def __init__(self, env, admin, instance_id=None, sleep=time.sleep):
        self.env = env
        self.admin = admin
        self.kms_key_name = env.kms_key_name
        if instance_id is None:
            instance_id = new_instance_id(env.instance_prefix)
        self.instance_id = instance_id
        self.cluster_id = f'{instance_id}-c1'
        self.table_id = TEST_TABLE_ID
        self.backup_id = BACKUP_ID
        self.sleep = sleep
        self.instance_deleted = False

    def __repr__(self):
        return f'CmekLifecycle(instance_id={self.instance_id!r}, ' \
               f'kms_key_name={self.kms_key_name!r})'

    def cmek_cluster_spec(self, cluster_id, zone):
        return ClusterSpec(cluster_id=cluster_id,
                           zone=zone,
                           serve_nodes=1,
                           storage_type=StorageType.SSD,
                           kms_key_name=self.kms_key_name)

    def create_cmek_instance(self):
        spec = self.cmek_cluster_spec(self.cluster_id, self.env.primary_zone)
        print(f'Creating instance {self.instance_id} with cluster '
              f'{self.cluster_id} in {spec.zone} protected by '
              f'{self.kms_key_name}')
        return self.admin.create_instance(self.instance_id, [spec])

    def add_cmek_cluster(self, cluster_id, zone):
        print(f'Adding cluster {cluster_id} in {zone} to instance '
              f'{self.instance_id}')
        return self.admin.create_cluster(
                 self.instance_id, self.cmek_cluster_spec(cluster_id, zone))

    def check_cluster_key(self, cluster_id):
        cluster = self.admin.get_cluster(self.instance_id, cluster_id)
        testlib.assert_eq(cluster.kms_key_name, self.kms_key_name,
                          name=f'kms key name of cluster {cluster_id}')
        return cluster

    def create_table(self):
        # Tables have no key of their own, they inherit it from the clusters
        return self.admin.create_table(self.instance_id, self.table_id,
                                       [COLUMN_FAMILY])

    def create_backup(self, ttl=BACKUP_TTL):
        expire_time = datetime.now(timezone.utc) + ttl
        return self.admin.create_backup(self.instance_id, self.cluster_id,
                                        self.backup_id, self.table_id,
                                        expire_time)

    def fetch_encryption_info(self):
        return self.admin.get_encryption_info(self.instance_id, self.table_id)

    def wait_for_cmek_status(self):
        return convergence.wait_for_cmek_status(
                 self.fetch_encryption_info, self.table_id, self.cluster_id,
                 schedule=self.env.backoff_schedule, sleep=self.sleep)

    def check_table_encryption(self):
        wait = self.env.wait_for_cmek_key_status
        if wait:
            self.wait_for_cmek_status()

        encryption_infos = self.fetch_encryption_info()
        clusters = self.admin.list_clusters(self.instance_id)
        testlib.assert_eq(len(encryption_infos), len(clusters),
                          name='number of clusters with encryption info',
                          resp=sorted(encryption_infos.keys()))
        info = single_encryption_info(encryption_infos, self.cluster_id)
        assert_table_encryption_info(info, self.kms_key_name,
                                     expect_converged=wait)
        return info

    def check_backup_encryption(self):
        backup = self.admin.get_backup(self.instance_id, self.cluster_id,
                                       self.backup_id)
        assert backup.encryption_info is not None, \
            f'backup {self.backup_id} has no encryption info'
        assert_backup_encryption_info(backup.encryption_info,
                                      self.kms_key_name)
        return backup

    def instance_and_cluster_scenario(self):
        self.create_cmek_instance()
        # Keys are specified per cluster, each cluster requesting the same
        # key, and a cluster's zone must be within the region of the key
        self.check_cluster_key(self.cluster_id)

        second_cluster_id = f'{self.instance_id}-c2'
        self.add_cmek_cluster(second_cluster_id,
                              self.env.primary_region_second_zone)
        self.check_cluster_key(second_cluster_id)

        third_cluster_id = f'{self.instance_id}-c3'
        zone = self.env.secondary_zone
        try:
            self.add_cmek_cluster(third_cluster_id, zone)
        except FailedPreconditionError as e:
            testlib.assert_in(
                expected_precondition_message(self.kms_key_name,
                                              self.admin.location_name(zone)),
                str(e))
        else:
            assert False, f'cluster {third_cluster_id} was created in ' \
                          f'{zone} with key {self.kms_key_name} from ' \
                          'another region'

    def table_scenario(self):
        self.create_cmek_instance()
        self.create_table()
        return self.check_table_encryption()

    def backup_scenario(self):
        self.create_cmek_instance()
        self.create_table()
        # Backups are pinned to the primary version of their table's key at
        # the time they are taken
        self.create_backup()
        return self.check_backup_encryption()

    def cleanup(self):
        try:
            ensure_deleted(self.admin.delete_backup, self.instance_id,
                           self.cluster_id, self.backup_id)
        finally:
            ensure_deleted(self.admin.delete_instance, self.instance_id)
            self.instance_deleted = True
