import json

import pytest

from bridge_git import BridgeError
from bridge_records import (
    CommitAttribution,
    TransferRecord,
    build_message,
    load_batch,
    record_basename,
    split_message,
    write_record,
)


def make_record(index, sha=None, parent='', subject='Subject', body='', patch=b'diff\n'):
    sha = sha or f"{index:040x}"
    attribution = CommitAttribution('Ada', 'ada@example.com', '2024-01-01T10:00:00+00:00')
    return TransferRecord(index, sha, parent, attribution, subject, body, patch)


def test_record_basename_pads_index_and_shortens_hash():
    assert record_basename(1, 'abcdef0123456789') == '001_commit_abcdef0'
    assert record_basename(42, 'ffffffffff') == '042_commit_fffffff'


@pytest.mark.parametrize('message,subject,body', [
    ('Only subject\n', 'Only subject', ''),
    ('Subject\n\nBody line 1\nBody line 2\n', 'Subject', '\nBody line 1\nBody line 2\n'),
    ('Subject\nsecond line without blank\n', 'Subject', 'second line without blank\n'),
    ('Subject\n\nNo trailing newline', 'Subject', '\nNo trailing newline'),
])
def test_split_message(message, subject, body):
    assert split_message(message) == (subject, body)


@pytest.mark.parametrize('message', [
    'Only subject\n',
    'Subject\n\nBody\n',
    'Subject\nsecond line without blank',
    'Subject\n\nNo trailing newline',
    'Subject\n\nTrailing blank lines\n\n\n',
    'Subject\n\n\nIndented after blank\n',
    '\n\nLeading blank lines\n',
])
def test_build_message_restores_message_exactly(message):
    assert build_message(*split_message(message)) == message


@pytest.mark.parametrize('message', ['Subject without newline', 'Subject\nBody\n\n'])
def test_record_metadata_keeps_raw_message(tmp_path, message):
    subject, body = split_message(message)
    record = make_record(1, subject=subject, body=body)
    record.raw_message = message
    record.encoding = 'ISO-8859-1'
    write_record(tmp_path, record)

    loaded = load_batch(tmp_path)[0]

    assert loaded.message() == message
    assert loaded.encoding == 'ISO-8859-1'


def test_record_without_raw_message_rebuilds_from_parts(tmp_path):
    record = make_record(1, subject='Subject', body='\nBody\n')
    write_record(tmp_path, record)
    metadata = json.loads(record.metadata_path.read_text(encoding='utf-8'))
    del metadata['commit_message']
    del metadata['commit_encoding']
    record.metadata_path.write_text(json.dumps(metadata), encoding='utf-8')

    loaded = load_batch(tmp_path)[0]

    assert loaded.message() == 'Subject\n\nBody\n'
    assert loaded.encoding is None


def test_attribution_falls_back_to_author_for_missing_committer():
    attribution = CommitAttribution('Ada', 'ada@example.com', '2024-01-01T10:00:00+00:00',
                                    None, '', 'null')
    env = attribution.as_environment()

    assert env['GIT_COMMITTER_NAME'] == 'Ada'
    assert env['GIT_COMMITTER_EMAIL'] == 'ada@example.com'
    assert env['GIT_COMMITTER_DATE'] == '2024-01-01T10:00:00+00:00'


def test_attribution_keeps_distinct_committer():
    attribution = CommitAttribution('Ada', 'ada@example.com', '2024-01-01T10:00:00+00:00',
                                    'Bob', 'bob@example.com', '2024-01-02T10:00:00+00:00')

    assert attribution.as_environment()['GIT_COMMITTER_NAME'] == 'Bob'


def test_write_record_creates_pair(tmp_path):
    record = make_record(1, sha='a' * 40, subject='Add file', body='Details', patch=b'\x00binary\xff')

    patch_path, metadata_path = write_record(tmp_path, record)

    assert patch_path.name == '001_commit_aaaaaaa.patch'
    assert metadata_path.name == '001_commit_aaaaaaa.json'
    assert patch_path.read_bytes() == b'\x00binary\xff'

    metadata = json.loads(metadata_path.read_text(encoding='utf-8'))
    assert metadata['index'] == 1
    assert metadata['sha'] == 'a' * 40
    assert metadata['parent_sha'] == ''
    assert metadata['commit_subject'] == 'Add file'
    assert metadata['commit_body'] == 'Details'
    assert metadata['commit_message'] == 'Add file\nDetails'
    assert metadata['commit_encoding'] is None
    assert metadata['committer_name'] == 'Ada'


def test_load_batch_orders_by_index(tmp_path):
    for index in (3, 1, 2):
        write_record(tmp_path, make_record(index, subject=f"Commit {index}"))

    records = load_batch(tmp_path)

    assert [r.index for r in records] == [1, 2, 3]
    assert [r.subject for r in records] == ['Commit 1', 'Commit 2', 'Commit 3']
    assert records[0].patch == b'diff\n'


def test_load_batch_accepts_records_without_index(tmp_path):
    for index in (1, 2):
        _, metadata_path = write_record(tmp_path, make_record(index, subject=f"Commit {index}"))
        metadata = json.loads(metadata_path.read_text(encoding='utf-8'))
        del metadata['index']
        del metadata['committer_name']
        metadata['parent_sha'] = None
        metadata_path.write_text(json.dumps(metadata), encoding='utf-8')

    records = load_batch(tmp_path)

    assert [r.subject for r in records] == ['Commit 1', 'Commit 2']
    assert records[0].is_root
    assert records[0].attribution.committer_name == 'Ada'


def test_load_batch_rejects_gap(tmp_path):
    write_record(tmp_path, make_record(1))
    write_record(tmp_path, make_record(3))

    with pytest.raises(BridgeError, match='without gaps'):
        load_batch(tmp_path)


def test_load_batch_rejects_missing_pair(tmp_path):
    write_record(tmp_path, make_record(1))
    _, metadata_path = write_record(tmp_path, make_record(2))
    metadata_path.unlink()

    with pytest.raises(BridgeError, match='missing metadata file'):
        load_batch(tmp_path)


def test_load_batch_rejects_null_and_empty_fields(tmp_path):
    _, metadata_path = write_record(tmp_path, make_record(1))
    metadata = json.loads(metadata_path.read_text(encoding='utf-8'))
    metadata['author_email'] = 'null'
    metadata['commit_subject'] = ''
    metadata_path.write_text(json.dumps(metadata), encoding='utf-8')

    with pytest.raises(BridgeError) as excinfo:
        load_batch(tmp_path)

    assert 'author_email' in str(excinfo.value)
    assert 'commit_subject' in str(excinfo.value)


def test_load_batch_rejects_malformed_json(tmp_path):
    _, metadata_path = write_record(tmp_path, make_record(1))
    metadata_path.write_text('{not json', encoding='utf-8')

    with pytest.raises(BridgeError, match='not valid JSON'):
        load_batch(tmp_path)


def test_load_batch_rejects_mixed_index_formats(tmp_path):
    write_record(tmp_path, make_record(1))
    _, metadata_path = write_record(tmp_path, make_record(2))
    metadata = json.loads(metadata_path.read_text(encoding='utf-8'))
    del metadata['index']
    metadata_path.write_text(json.dumps(metadata), encoding='utf-8')

    with pytest.raises(BridgeError, match='some records carry an index'):
        load_batch(tmp_path)


def test_load_batch_rejects_empty_directory(tmp_path):
    with pytest.raises(BridgeError, match='No transfer records'):
        load_batch(tmp_path)
