"""
Tests for the command-line interface, run against moto.
"""
import json

import pytest

from transfer_service import cli


@pytest.fixture(autouse=True)
def no_signal_handler(monkeypatch):
    monkeypatch.setattr(cli, 'install_interrupt_handler', lambda token: None)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "region_name": "us-east-1",
        "max_attempts": 2,
        "backoff_multiplier": 0,
        "backoff_min": 0,
        "backoff_max": 0,
        "log_dir": str(tmp_path / "logs"),
    }))
    return path


def run(*argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(list(argv))
    return exc_info.value.code


def test_upload_and_download_directory(mock_aws, config_file, tmp_upload_dir, tmp_path):
    (tmp_upload_dir / "sub").mkdir()
    (tmp_upload_dir / "a.txt").write_text("alpha")
    (tmp_upload_dir / "sub" / "b.txt").write_text("beta")

    assert run('-c', str(config_file), 'upload', str(tmp_upload_dir), 'test-bucket', 'backup') == 0

    keys = [obj['Key'] for obj in mock_aws.list_objects_v2(Bucket='test-bucket')['Contents']]
    assert keys == ['backup/a.txt', 'backup/sub/b.txt']

    target = tmp_path / "restored"
    assert run('-c', str(config_file), 'download', '-r', 'test-bucket', 'backup', str(target)) == 0
    assert (target / "sub" / "b.txt").read_text() == "beta"
    assert list((tmp_path / "logs").glob("transfer_*.json"))


def test_upload_single_file(mock_aws, config_file, tmp_upload_dir):
    source = tmp_upload_dir / "a.txt"
    source.write_text("alpha")

    assert run('-c', str(config_file), 'upload', str(source), 'test-bucket', 'x/a.txt') == 0
    assert mock_aws.get_object(Bucket='test-bucket', Key='x/a.txt')['Body'].read() == b"alpha"


def test_list_mkdir_delete(mock_aws, config_file, capsys):
    mock_aws.put_object(Bucket='test-bucket', Key='dir/a.txt', Body=b"abc")

    assert run('-c', str(config_file), 'mkdir', 'test-bucket', 'dir/empty') == 0
    assert run('-c', str(config_file), 'list', 'test-bucket', 'dir/', '--ignore-markers') == 0
    output = capsys.readouterr().out
    assert 'dir/a.txt' in output
    assert 'dir/empty/' not in output

    assert run('-c', str(config_file), 'delete', '-r', 'test-bucket', 'dir') == 0
    assert mock_aws.list_objects_v2(Bucket='test-bucket').get('KeyCount') == 0


def test_copy(mock_aws, config_file):
    mock_aws.create_bucket(Bucket='target-bucket')
    mock_aws.put_object(Bucket='test-bucket', Key='a.txt', Body=b"abc")

    assert run('-c', str(config_file), 'copy', 'test-bucket', 'target-bucket', 'a.txt') == 0
    assert mock_aws.get_object(Bucket='target-bucket', Key='a.txt')['Body'].read() == b"abc"


def test_reap_and_presign(mock_aws, config_file, capsys):
    mock_aws.create_multipart_upload(Bucket='test-bucket', Key='big.bin')

    assert run('-c', str(config_file), 'reap', 'test-bucket', '--older-than-hours', '-1') == 0
    assert run('-c', str(config_file), 'presign', 'test-bucket', 'a.txt', '--expires-in', '60') == 0

    output = capsys.readouterr().out
    assert "Aborted 1 multipart uploads" in output
    assert "a.txt" in output


def test_missing_key_exits_with_error(mock_aws, config_file, tmp_path):
    assert run('-c', str(config_file), 'download', 'test-bucket', 'missing.txt',
               str(tmp_path / "missing.txt")) == 1


def test_bad_config_file(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")

    assert run('-c', str(bad), 'list', 'test-bucket') == 1
