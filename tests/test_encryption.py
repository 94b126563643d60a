import pytest

from cmek_tests.testlib.encryption import EncryptionInfo, EncryptionType, \
    KEY_VERSION_NOT_TRACKED, KEY_VERSION_NOT_YET_KNOWN, Status, StatusCode, \
    UnhandledEncryptionStateError, assert_backup_encryption_info, \
    assert_table_encryption_info, encryption_infos_from_table_json, \
    single_encryption_info

KEY = 'projects/p/locations/us-central1/keyRings/r/cryptoKeys/k'
CMEK = EncryptionType.CUSTOMER_MANAGED_ENCRYPTION


def info(code, message='', version='', type=CMEK):
    return EncryptionInfo(type, version, Status(code, message))


def test_status_defaults():
    assert Status.from_json({}) == Status(StatusCode.OK, '')
    assert Status.from_json({'code': 2, 'message': 'm'}) == \
        Status(StatusCode.UNKNOWN, 'm')


def test_encryption_info_defaults():
    assert EncryptionInfo.from_json({}) == \
        EncryptionInfo(EncryptionType.ENCRYPTION_TYPE_UNSPECIFIED, '',
                       Status(StatusCode.OK, ''))


def test_encryption_info_from_json():
    json = {'encryptionType': 'CUSTOMER_MANAGED_ENCRYPTION',
            'encryptionStatus': {'code': 9, 'message': 'key disabled'},
            'kmsKeyVersion': f'{KEY}/cryptoKeyVersions/3'}
    assert EncryptionInfo.from_json(json) == \
        info(StatusCode.FAILED_PRECONDITION, 'key disabled',
             f'{KEY}/cryptoKeyVersions/3')


def test_encryption_infos_from_table_json():
    table = {'name': 'projects/p/instances/i/tables/t',
             'clusterStates': {
                 'c1': {'encryptionInfo': [
                     {'encryptionType': 'CUSTOMER_MANAGED_ENCRYPTION'}]},
                 'c2': {'replicationState': 'READY'}}}
    infos = encryption_infos_from_table_json(table)
    assert sorted(infos) == ['c1', 'c2']
    assert infos['c1'] == [info(StatusCode.OK)]
    assert infos['c2'] == []
    assert encryption_infos_from_table_json({'name': 'x'}) == {}


def test_single_encryption_info():
    i = info(StatusCode.OK)
    assert single_encryption_info({'c1': [i]}, 'c1') is i
    with pytest.raises(UnhandledEncryptionStateError):
        single_encryption_info({'c1': [i]}, 'c2')
    with pytest.raises(UnhandledEncryptionStateError):
        single_encryption_info({'c1': []}, 'c1')
    with pytest.raises(UnhandledEncryptionStateError):
        single_encryption_info({'c1': [i, i]}, 'c1')


def test_table_info_not_yet_known():
    assert_table_encryption_info(
        info(StatusCode.UNKNOWN, KEY_VERSION_NOT_YET_KNOWN), KEY)


def test_table_info_converged():
    converged = info(StatusCode.OK, version=f'{KEY}/cryptoKeyVersions/1')
    assert_table_encryption_info(converged, KEY)
    assert_table_encryption_info(converged, KEY, expect_converged=True)


def test_table_info_unknown_when_converged_expected():
    with pytest.raises(AssertionError):
        assert_table_encryption_info(
            info(StatusCode.UNKNOWN, KEY_VERSION_NOT_YET_KNOWN), KEY,
            expect_converged=True)


def test_table_info_unknown_with_version():
    with pytest.raises(AssertionError):
        assert_table_encryption_info(
            info(StatusCode.UNKNOWN, KEY_VERSION_NOT_YET_KNOWN,
                 f'{KEY}/cryptoKeyVersions/1'), KEY)


def test_table_info_ok_with_other_key():
    other = 'projects/p/locations/us-central1/keyRings/r/cryptoKeys/other'
    with pytest.raises(AssertionError):
        assert_table_encryption_info(
            info(StatusCode.OK, version=f'{other}/cryptoKeyVersions/1'), KEY)


def test_table_info_ok_with_message():
    with pytest.raises(AssertionError):
        assert_table_encryption_info(
            info(StatusCode.OK, 'something', f'{KEY}/cryptoKeyVersions/1'),
            KEY)


def test_table_info_google_default_encryption():
    with pytest.raises(AssertionError):
        assert_table_encryption_info(
            info(StatusCode.OK, type=EncryptionType.GOOGLE_DEFAULT_ENCRYPTION),
            KEY)


def test_table_info_unhandled_code():
    with pytest.raises(UnhandledEncryptionStateError):
        assert_table_encryption_info(
            info(StatusCode.PERMISSION_DENIED, 'no access'), KEY)


def test_backup_info():
    assert_backup_encryption_info(
        info(StatusCode.UNKNOWN, KEY_VERSION_NOT_TRACKED,
             f'{KEY}/cryptoKeyVersions/2'), KEY)


@pytest.mark.parametrize('backup_info', [
    info(StatusCode.OK, '', f'{KEY}/cryptoKeyVersions/2'),
    info(StatusCode.UNKNOWN, KEY_VERSION_NOT_TRACKED, ''),
    info(StatusCode.UNKNOWN, KEY_VERSION_NOT_YET_KNOWN,
         f'{KEY}/cryptoKeyVersions/2'),
    info(StatusCode.UNKNOWN, KEY_VERSION_NOT_TRACKED,
         f'{KEY}/cryptoKeyVersions/2',
         type=EncryptionType.GOOGLE_DEFAULT_ENCRYPTION)])
def test_backup_info_mismatch(backup_info):
    with pytest.raises(AssertionError):
        assert_backup_encryption_info(backup_info, KEY)


def test_unknown_encryption_type():
    with pytest.raises(UnhandledEncryptionStateError) as e:
        EncryptionInfo.from_json(
            {'encryptionType': 'CUSTOMER_MANAGED_ENCRYPTION_V2'})
    assert 'CUSTOMER_MANAGED_ENCRYPTION_V2' in str(e.value)


def test_unknown_status_code():
    with pytest.raises(UnhandledEncryptionStateError) as e:
        Status.from_json({'code': 42, 'message': 'new'})
    assert '42' in str(e.value)
    with pytest.raises(UnhandledEncryptionStateError):
        encryption_infos_from_table_json(
            {'clusterStates': {'c1': {'encryptionInfo': [
                {'encryptionType': 'CUSTOMER_MANAGED_ENCRYPTION',
                 'encryptionStatus': {'code': 42}}]}}})
