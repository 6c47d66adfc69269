"""Tests for the download orchestrator."""
import asyncio
import contextlib

import pytest

from mclauncher.download import CancelToken, DownloadOrchestrator
from mclauncher.errors import Cancelled, DownloadAggregateError
from mclauncher.http import FetchResponse
from mclauncher.models import Artifact, ArtifactKind

from support import BASE_URL, FakeFetcher, sha1

FILES = {
    'alpha.jar': b'alpha library content',
    'beta.jar': b'beta library content, a little longer',
    'gamma.jar': b'gamma',
}


class GatedFetcher(FakeFetcher):
    """Holds every body back until ``expected`` transfers are open at once."""

    def __init__(self, files, expected):
        super().__init__(files)
        self.expected = expected
        self.opened = 0
        self.all_open = None

    @contextlib.asynccontextmanager
    async def open(self, url, offset=0):
        if self.all_open is None:
            self.all_open = asyncio.Event()
        async with super().open(url, offset) as response:
            self.opened += 1
            if self.opened >= self.expected:
                self.all_open.set()

            async def gated(chunks=response.chunks):
                await self.all_open.wait()
                async for chunk in chunks:
                    yield chunk

            yield FetchResponse(gated(), total=response.total, resumed=response.resumed)


def _artifact(name, data=None, **extra):
    data = FILES[name] if data is None else data
    values = dict(identity=name, kind=ArtifactKind.LIBRARY, url=f"{BASE_URL}/{name}",
                  path=f"libraries/{name}", sha1=sha1(data), size=len(data))
    values.update(extra)
    return Artifact(**values)


def _fetcher():
    return FakeFetcher({f"{BASE_URL}/{name}": data for name, data in FILES.items()})


def _orchestrator(fetcher, root, **kwargs):
    kwargs.setdefault('backoff', 0)
    return DownloadOrchestrator(fetcher, root, **kwargs)


def test_downloads_are_verified_and_idempotent(tmp_path):
    fetcher = _fetcher()
    artifacts = [_artifact(name) for name in FILES]

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run(artifacts))
    assert report.ok
    assert len(report.fetched) == 3
    assert report.total_bytes == sum(len(data) for data in FILES.values())
    for name, data in FILES.items():
        assert (tmp_path / 'libraries' / name).read_bytes() == data
        assert not (tmp_path / 'libraries' / f"{name}.part").exists()

    fetcher.calls.clear()
    report = asyncio.run(_orchestrator(fetcher, tmp_path).run(artifacts))
    assert fetcher.calls == []
    assert len(report.cached) == 3
    assert report['alpha.jar'].fetched is False


def test_corrupted_file_is_fetched_again(tmp_path):
    fetcher = _fetcher()
    artifacts = [_artifact(name) for name in FILES]
    asyncio.run(_orchestrator(fetcher, tmp_path).run(artifacts))

    target = tmp_path / 'libraries' / 'beta.jar'
    target.write_bytes(b'x' * len(FILES['beta.jar']))
    fetcher.calls.clear()

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run(artifacts))
    assert fetcher.download_calls == [f"{BASE_URL}/beta.jar"]
    assert [o.artifact.identity for o in report.fetched] == ['beta.jar']
    assert target.read_bytes() == FILES['beta.jar']


def test_truncated_file_is_fetched_again(tmp_path):
    fetcher = _fetcher()
    target = tmp_path / 'libraries' / 'alpha.jar'
    target.parent.mkdir(parents=True)
    target.write_bytes(b'alpha')
    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('alpha.jar')]))
    assert report['alpha.jar'].fetched
    assert target.read_bytes() == FILES['alpha.jar']


def test_transient_failures_are_retried(tmp_path):
    fetcher = _fetcher()
    fetcher.fail(f"{BASE_URL}/alpha.jar", 2)
    report = asyncio.run(_orchestrator(fetcher, tmp_path, retries=3).run([_artifact('alpha.jar')]))
    assert report.ok
    assert report['alpha.jar'].attempts == 3
    assert len(fetcher.requests_for(f"{BASE_URL}/alpha.jar")) == 3


def test_exhausted_retries_fail_the_run(tmp_path):
    fetcher = _fetcher()
    fetcher.fail(f"{BASE_URL}/alpha.jar", 10)
    report = asyncio.run(_orchestrator(fetcher, tmp_path, retries=2).run(
        [_artifact('alpha.jar'), _artifact('gamma.jar')]))

    outcome = report['alpha.jar']
    assert outcome.ok is False
    assert outcome.attempts == 3
    assert '503' in outcome.reason
    assert report['gamma.jar'].ok
    with pytest.raises(DownloadAggregateError) as excinfo:
        report.raise_for_failures()
    assert [f.artifact for f in excinfo.value.failures] == ['alpha.jar']
    assert excinfo.value.failures[0].attempts == 3


def test_hash_mismatch_is_never_stored(tmp_path):
    fetcher = _fetcher()
    fetcher.files[f"{BASE_URL}/gamma.jar"] = b'GAMMA'
    report = asyncio.run(_orchestrator(fetcher, tmp_path, retries=1).run([_artifact('gamma.jar')]))

    assert report['gamma.jar'].ok is False
    assert 'SHA1 mismatch' in report['gamma.jar'].reason
    assert not (tmp_path / 'libraries' / 'gamma.jar').exists()
    assert not (tmp_path / 'libraries' / 'gamma.jar.part').exists()


def test_optional_failures_are_tolerated(tmp_path):
    fetcher = _fetcher()
    missing = Artifact(identity='asset:missing', kind=ArtifactKind.ASSET, url=f"{BASE_URL}/missing",
                       path='assets/objects/ab/missing', sha1='ab' * 20, size=4, optional=True)
    report = asyncio.run(_orchestrator(fetcher, tmp_path, retries=0).run([_artifact('alpha.jar'), missing]))

    assert len(report.failed) == 1
    report.raise_for_failures()
    with pytest.raises(DownloadAggregateError):
        report.raise_for_failures(allow_optional=False)


def test_partial_download_is_resumed(tmp_path):
    fetcher = _fetcher()
    data = FILES['beta.jar']
    part = tmp_path / 'libraries' / 'beta.jar.part'
    part.parent.mkdir(parents=True)
    part.write_bytes(data[:10])

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('beta.jar')]))
    assert report.ok
    assert fetcher.requests_for(f"{BASE_URL}/beta.jar") == [10]
    assert (tmp_path / 'libraries' / 'beta.jar').read_bytes() == data
    assert not part.exists()


def test_resume_restarts_when_range_is_ignored(tmp_path):
    fetcher = _fetcher()
    fetcher.honor_range = False
    data = FILES['beta.jar']
    part = tmp_path / 'libraries' / 'beta.jar.part'
    part.parent.mkdir(parents=True)
    part.write_bytes(data[:10])

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('beta.jar')]))
    assert report.ok
    assert (tmp_path / 'libraries' / 'beta.jar').read_bytes() == data


def test_interrupted_transfer_resumes_on_retry(tmp_path):
    fetcher = _fetcher()
    url = f"{BASE_URL}/beta.jar"
    fetcher.truncate[url] = 8

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('beta.jar')]))
    assert report.ok
    assert report['beta.jar'].attempts == 2
    assert fetcher.requests_for(url) == [0, 8]
    assert (tmp_path / 'libraries' / 'beta.jar').read_bytes() == FILES['beta.jar']


def test_shared_destination_is_downloaded_once(tmp_path):
    fetcher = _fetcher()
    first = _artifact('alpha.jar')
    second = _artifact('alpha.jar', identity='alpha-alias')
    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([first, second]))

    assert len(fetcher.requests_for(f"{BASE_URL}/alpha.jar")) == 1
    assert report['alpha.jar'].ok and report['alpha-alias'].ok
    assert report['alpha-alias'].artifact.identity == 'alpha-alias'


def test_missing_hash_uses_maven_sidecar(tmp_path):
    fetcher = _fetcher()
    fetcher.files[f"{BASE_URL}/alpha.jar.sha1"] = sha1(FILES['alpha.jar']).encode() + b'  alpha.jar\n'
    fetcher.files[f"{BASE_URL}/beta.jar.sha1"] = b'0' * 40
    artifacts = [_artifact('alpha.jar', sha1=None), _artifact('beta.jar', sha1=None)]

    report = asyncio.run(_orchestrator(fetcher, tmp_path, retries=0).run(artifacts))
    assert report['alpha.jar'].ok
    assert report['beta.jar'].ok is False


def test_missing_hash_accepts_present_file(tmp_path):
    fetcher = _fetcher()
    target = tmp_path / 'libraries' / 'gamma.jar'
    target.parent.mkdir(parents=True)
    target.write_bytes(b'anything')
    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('gamma.jar', sha1=None, size=None)]))
    assert report.ok
    assert fetcher.calls == []


def test_cancellation_stops_remaining_work(tmp_path):
    fetcher = _fetcher()
    token = CancelToken()

    def cancel_after_first_file(event):
        if event.total and event.done >= event.total:
            token.cancel()

    orchestrator = _orchestrator(fetcher, tmp_path, max_parallel=1, progress=cancel_after_first_file, cancel=token)
    with pytest.raises(Cancelled) as excinfo:
        asyncio.run(orchestrator.run([_artifact('alpha.jar'), _artifact('beta.jar')]))

    stored = sorted(p.name for p in (tmp_path / 'libraries').iterdir() if not p.name.endswith('.part'))
    assert len(stored) == 1
    assert excinfo.value.completed == 1


def test_progress_callback_errors_do_not_abort(tmp_path):
    def broken(event):
        raise RuntimeError('display went away')

    report = asyncio.run(_orchestrator(_fetcher(), tmp_path, progress=broken).run([_artifact('gamma.jar')]))
    assert report.ok


def test_cancellation_leaves_in_flight_siblings_resumable(tmp_path):
    fetcher = GatedFetcher({f"{BASE_URL}/{name}": data for name, data in FILES.items()}, expected=3)
    token = CancelToken()

    def cancel_after_first_file(event):
        if event.total and event.done >= event.total:
            token.cancel()

    orchestrator = _orchestrator(fetcher, tmp_path, max_parallel=3, progress=cancel_after_first_file, cancel=token)
    with pytest.raises(Cancelled) as excinfo:
        asyncio.run(orchestrator.run([_artifact(name) for name in FILES]))

    assert fetcher.opened == 3
    assert excinfo.value.completed == 1
    libraries = tmp_path / 'libraries'
    stored = [name for name in FILES if (libraries / name).exists()]
    assert len(stored) == 1
    assert (libraries / stored[0]).read_bytes() == FILES[stored[0]]
    partial = sorted(p.name for p in libraries.iterdir() if p.name.endswith('.part'))
    assert partial == sorted(f"{name}.part" for name in FILES if name not in stored)


def test_failed_resume_starts_over(tmp_path):
    fetcher = _fetcher()
    url = f"{BASE_URL}/beta.jar"
    fetcher.fail(url, 1)
    part = tmp_path / 'libraries' / 'beta.jar.part'
    part.parent.mkdir(parents=True)
    part.write_bytes(FILES['beta.jar'][:10])

    report = asyncio.run(_orchestrator(fetcher, tmp_path).run([_artifact('beta.jar')]))
    assert report.ok
    assert fetcher.requests_for(url) == [10, 0]


def test_unreadable_existing_file_is_reported(tmp_path, monkeypatch):
    async def unreadable(path):
        raise PermissionError(f"cannot read {path.name}")

    target = tmp_path / 'libraries' / 'alpha.jar'
    target.parent.mkdir(parents=True)
    target.write_bytes(FILES['alpha.jar'])
    monkeypatch.setattr('mclauncher.download.get_file_sha1', unreadable)

    report = asyncio.run(_orchestrator(_fetcher(), tmp_path).run([_artifact('alpha.jar')]))
    assert report['alpha.jar'].ok is False
    assert 'cannot read alpha.jar' in report['alpha.jar'].reason
    with pytest.raises(DownloadAggregateError):
        report.raise_for_failures()
