# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from typing import List

import requests

from cmek_tests.testlib import testlib
from cmek_tests.testlib.encryption import StatusCode, \
    encryption_infos_from_table_json
from cmek_tests.testlib.models import Backup, Cluster, ClusterSpec, \
    EncryptionInfos, Instance, Table, format_timestamp

DEFAULT_ENDPOINT = 'https://bigtableadmin.googleapis.com'
API_VERSION = 'v2'

# Used when an error response carries no google.rpc status
HTTP_CODE_TO_STATUS = {400: 'INVALID_ARGUMENT',
                       401: 'UNAUTHENTICATED',
                       403: 'PERMISSION_DENIED',
                       404: 'NOT_FOUND',
                       409: 'ALREADY_EXISTS',
                       429: 'RESOURCE_EXHAUSTED',
                       499: 'CANCELLED',
                       500: 'INTERNAL',
                       501: 'UNIMPLEMENTED',
                       503: 'UNAVAILABLE',
                       504: 'DEADLINE_EXCEEDED'}


class ApiError(Exception):
    def __init__(self, status, message, http_code=None):
        super().__init__(f'{status}: {message}')
        self.status = status
        self.message = message
        self.http_code = http_code


class NotFoundError(ApiError):
    pass


class FailedPreconditionError(ApiError):
    pass


ERRORS_BY_STATUS = {'NOT_FOUND': NotFoundError,
                    'FAILED_PRECONDITION': FailedPreconditionError}


def api_error(status, message, http_code=None):
    error_class = ERRORS_BY_STATUS.get(status, ApiError)
    return error_class(status, message, http_code=http_code)


def error_from_response(res):
    try:
        error = res.json()['error']
        status = error.get('status') or \
                 HTTP_CODE_TO_STATUS.get(res.status_code, 'UNKNOWN')
        message = error.get('message', '')
    except (ValueError, KeyError, TypeError):
        status = HTTP_CODE_TO_STATUS.get(res.status_code, 'UNKNOWN')
        message = res.text
    return api_error(status, message, http_code=res.status_code)


def error_from_operation(error):
    # Operation errors carry a numeric google.rpc.Code
    try:
        status = StatusCode(error.get('code', StatusCode.UNKNOWN.value)).name
    except ValueError:
        status = StatusCode.UNKNOWN.name
    return api_error(status, error.get('message', ''))


def format_location_name(project_id, zone):
    return f'projects/{project_id}/locations/{zone}'


def format_instance_name(project_id, instance_id):
    return f'projects/{project_id}/instances/{instance_id}'


def format_cluster_name(project_id, instance_id, cluster_id):
    return f'{format_instance_name(project_id, instance_id)}' \
           f'/clusters/{cluster_id}'


def format_table_name(project_id, instance_id, table_id):
    return f'{format_instance_name(project_id, instance_id)}/tables/{table_id}'


def format_backup_name(project_id, instance_id, cluster_id, backup_id):
    return f'{format_cluster_name(project_id, instance_id, cluster_id)}' \
           f'/backups/{backup_id}'


def http_request(method, url, session, verbose=True, **kwargs):
    if 'timeout' not in kwargs:
        kwargs['timeout'] = 60

    if verbose:
        print(f'sending {method} {url} {kwargs}')
    try:
        res = session.request(method, url, **kwargs)
    except (requests.exceptions.ConnectionError,
            requests.exceptions.Timeout) as e:
        raise ApiError('UNAVAILABLE', str(e)) from e
    if verbose:
        text = ''
        if hasattr(res, 'text') and res.text is not None:
            max_len = 80
            if len(res.text) > max_len:
                text = f' {res.text[0:max_len]}...'
            else:
                text = f' {res.text}'
        print(f'result: {res.status_code}{text}')
    return res


class AdminClient:
    """Bigtable instance and table admin calls over the REST API

    Every create call that the service implements as a long-running
    operation blocks until the operation is done, so callers observe the
    created resource (or its error) synchronously.
    """

    def __init__(self, project_id, session, endpoint=DEFAULT_ENDPOINT,
                 operation_poll_interval=2, operation_timeout=1200):
        self.project_id = project_id
        self.session = session
        self.endpoint = endpoint.rstrip('/')
        self.operation_poll_interval = operation_poll_interval
        self.operation_timeout = operation_timeout

    def __repr__(self):
        return f'AdminClient(project_id={self.project_id!r}, ' \
               f'endpoint={self.endpoint!r})'

    def url(self, name):
        return f'{self.endpoint}/{API_VERSION}/{name}'

    def request(self, method, name, verbose=True, **kwargs):
        res = http_request(method, self.url(name), self.session,
                           verbose=verbose, **kwargs)
        if res.status_code != 200:
            raise error_from_response(res)
        if not res.text:
            return {}
        return res.json()

    def location_name(self, zone):
        return format_location_name(self.project_id, zone)

    def instance_name(self, instance_id):
        return format_instance_name(self.project_id, instance_id)

    def cluster_name(self, instance_id, cluster_id):
        return format_cluster_name(self.project_id, instance_id, cluster_id)

    def table_name(self, instance_id, table_id):
        return format_table_name(self.project_id, instance_id, table_id)

    def backup_name(self, instance_id, cluster_id, backup_id):
        return format_backup_name(self.project_id, instance_id, cluster_id,
                                  backup_id)

    def cluster_json(self, spec: ClusterSpec):
        cluster = {'location': self.location_name(spec.zone),
                   'serveNodes': spec.serve_nodes,
                   'defaultStorageType': spec.storage_type.value}
        if spec.kms_key_name is not None:
            cluster['encryptionConfig'] = {'kmsKeyName': spec.kms_key_name}
        return cluster

    def wait_for_operation(self, operation):
        name = operation['name']

        def operation_done():
            op = self.request('GET', name, verbose=testlib.config['verbose'])
            return op if op.get('done') else False

        if not operation.get('done'):
            operation = testlib.poll_for_condition(
                operation_done,
                sleep_time=self.operation_poll_interval,
                timeout=self.operation_timeout,
                msg=f'wait for operation {name}')

        if 'error' in operation:
            raise error_from_operation(operation['error'])
        return operation.get('response', {})

    def create_instance(self, instance_id, clusters: List[ClusterSpec],
                        display_name=None) -> Instance:
        body = {'instanceId': instance_id,
                'instance': {'displayName': display_name or instance_id,
                             'type': 'PRODUCTION'},
                'clusters': {c.cluster_id: self.cluster_json(c)
                             for c in clusters}}
        op = self.request('POST', f'projects/{self.project_id}/instances',
                          json=body)
        return Instance.from_json(self.wait_for_operation(op))

    def delete_instance(self, instance_id):
        self.request('DELETE', self.instance_name(instance_id))

    def create_cluster(self, instance_id, spec: ClusterSpec) -> Cluster:
        op = self.request('POST',
                          f'{self.instance_name(instance_id)}/clusters',
                          params={'clusterId': spec.cluster_id},
                          json=self.cluster_json(spec))
        return Cluster.from_json(self.wait_for_operation(op))

    def get_cluster(self, instance_id, cluster_id) -> Cluster:
        return Cluster.from_json(
                 self.request('GET', self.cluster_name(instance_id,
                                                       cluster_id)))

    def list_clusters(self, instance_id) -> List[Cluster]:
        res = self.request('GET', f'{self.instance_name(instance_id)}/clusters')
        return [Cluster.from_json(c) for c in res.get('clusters', [])]

    def create_table(self, instance_id, table_id, families) -> Table:
        body = {'tableId': table_id,
                'table': {'columnFamilies': {f: {} for f in families}}}
        res = self.request('POST', f'{self.instance_name(instance_id)}/tables',
                           json=body)
        return Table.from_json(res)

    def get_table(self, instance_id, table_id, view='SCHEMA_VIEW'):
        return self.request('GET', self.table_name(instance_id, table_id),
                            params={'view': view})

    def get_encryption_info(self, instance_id, table_id) -> EncryptionInfos:
        table = self.get_table(instance_id, table_id, view='ENCRYPTION_VIEW')
        return encryption_infos_from_table_json(table)

    def create_backup(self, instance_id, cluster_id, backup_id,
                      source_table_id, expire_time) -> Backup:
        body = {'sourceTable': self.table_name(instance_id, source_table_id),
                'expireTime': format_timestamp(expire_time)}
        op = self.request('POST',
                          f'{self.cluster_name(instance_id, cluster_id)}'
                          f'/backups',
                          params={'backupId': backup_id},
                          json=body)
        return Backup.from_json(self.wait_for_operation(op))

    def get_backup(self, instance_id, cluster_id, backup_id) -> Backup:
        return Backup.from_json(
                 self.request('GET', self.backup_name(instance_id, cluster_id,
                                                      backup_id)))

    def delete_backup(self, instance_id, cluster_id, backup_id):
        self.request('DELETE', self.backup_name(instance_id, cluster_id,
                                                backup_id))


def ensure_deleted(delete_fun, *args) -> bool:
    """Runs a delete call, treating an already missing resource as deleted"""
    try:
        delete_fun(*args)
        return True
    except NotFoundError:
        testlib.maybe_print(f'{delete_fun.__name__}{args}: already deleted')
        return False
