import json
import zipfile

import pytest

from generate_collection import main
from conftest import SMALL_CATALOG, small_images


@pytest.fixture
def catalog_path(tmp_path):
    root = tmp_path / 'traits'
    for ref, image in small_images().items():
        (root / ref).parent.mkdir(parents=True, exist_ok=True)
        image.save(root / ref)
    path = root / 'catalog.json'
    path.write_text(json.dumps(SMALL_CATALOG), encoding='utf-8')
    return path


def run_cli(catalog_path, out, *extra):
    return main([
        '--catalog', str(catalog_path), '--out', str(out), '--name', 'Foo',
        '--media-base-uri', 'ipfs://CID', '--width', '8', '--height', '8', '--seed', '1',
        '--log-level', 'warning', *extra,
    ])


def test_cli_writes_collection(catalog_path, tmp_path, capsys):
    out = tmp_path / 'Foo.zip'
    assert run_cli(catalog_path, out, '--count', '6') == 0

    with zipfile.ZipFile(out) as zf:
        assert len(zf.namelist()) == 12
        assert json.loads(zf.read('metadata/6'))['name'] == "Foo #6"
    assert "6/6 tokens" in capsys.readouterr().out


def test_cli_silhouette_adds_reveal_data(catalog_path, tmp_path):
    out = tmp_path / 'Shadow.zip'
    assert run_cli(catalog_path, out, '--count', '3', '--silhouette', '--workers', '2') == 0
    with zipfile.ZipFile(out) as zf:
        assert 'reveal_data/3.json' in zf.namelist()


def test_cli_reports_insufficient_space(catalog_path, tmp_path):
    out = tmp_path / 'Big.zip'
    assert run_cli(catalog_path, out, '--count', '19') == 1
    assert not out.exists()


def test_cli_rejects_bad_request(catalog_path, tmp_path):
    assert run_cli(catalog_path, tmp_path / 'x.zip', '--count', '0') == 2


@pytest.mark.parametrize('contents', [None, '{not json', json.dumps({'layer_order': ['hat'], 'traits': {}})])
def test_cli_reports_unusable_catalog(tmp_path, contents):
    path = tmp_path / 'catalog.json'
    if contents is not None:
        path.write_text(contents, encoding='utf-8')
    assert run_cli(path, tmp_path / 'x.zip', '--count', '1') == 2
    assert not (tmp_path / 'x.zip').exists()
