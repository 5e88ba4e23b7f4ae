"""Integration tests: the full resolve -> compile -> assemble pipeline.

Exercises the Orchestrator end to end with the fake fetcher and toolchain:
successful builds, idempotence, and the gating guarantees between stages.
"""

from __future__ import annotations

import json

import pytest

from lockforge.cli.commands.inspect_image import read_docker_archive
from lockforge.core.hasher import digest_bytes
from lockforge.core.orchestrator import Orchestrator
from lockforge.errors import CompileError, HashMismatch, NetworkAccessAttempt
from lockforge.models.stages import StageState


class _AssembleSpy:
    def __init__(self, orchestrator: Orchestrator) -> None:
        self.calls = 0
        self._assemble = orchestrator.assembler.assemble
        orchestrator.assembler.assemble = self  # type: ignore[method-assign]

    def __call__(self, *args, **kwargs):
        self.calls += 1
        return self._assemble(*args, **kwargs)


@pytest.fixture
def make_orchestrator(build_config, settings, no_sleep):
    def _factory(fetcher, runner, config=None, **settings_overrides) -> Orchestrator:
        return Orchestrator(
            config or build_config,
            settings.model_copy(update=settings_overrides),
            fetcher=fetcher,
            runner=runner,
            sleep=no_sleep,
        )

    return _factory


class TestFullPipeline:
    def test_valid_run_produces_wrapped_image(self, make_orchestrator, fetcher, toolchain, settings):
        orchestrator = make_orchestrator(fetcher, toolchain)
        image = orchestrator.build_image()

        assert len(image.entrypoint) == 3
        assert image.entrypoint == ("/sbin/tini", "--", "/bin/hello")
        assert image.exposed_ports == ("9090/tcp",)
        assert image.env == {
            "SSL_CERT_FILE": "/etc/ssl/certs/ca-bundle.crt",
            "OBSERVABILITY_ADDRESS": "0.0.0.0:9090",
        }

        entry, config, layers = read_docker_archive(settings.output_path / "hello-latest.tar")
        assert config["config"]["Entrypoint"] == ["/sbin/tini", "--", "/bin/hello"]
        assert [digest_bytes(data).address for _, data in layers] == list(image.filesystem_digests())

    def test_artifact_in_image_matches_build(self, make_orchestrator, fetcher, toolchain):
        orchestrator = make_orchestrator(fetcher, toolchain)
        image = orchestrator.build_image()
        artifact = orchestrator.run_context["artifact"]
        app_layer = orchestrator.cache.retrieve(image.layers[1].digest)
        assert orchestrator.cache.retrieve(artifact.content_address) in app_layer

    def test_idempotent_builds(self, make_orchestrator, fetcher, toolchain):
        first = make_orchestrator(fetcher, toolchain).build_image()
        second = make_orchestrator(fetcher, toolchain).build_image()
        assert first.filesystem_digests() == second.filesystem_digests()
        assert first.config_digest == second.config_digest

    def test_created_now_keeps_filesystem_digests(self, make_orchestrator, fetcher, toolchain):
        first = make_orchestrator(fetcher, toolchain, image_created="now").build_image()
        second = make_orchestrator(fetcher, toolchain, image_created="2030-01-01T00:00:00Z").build_image()
        assert first.filesystem_digests() == second.filesystem_digests()
        assert first.created != second.created

    def test_second_run_is_served_from_cache(self, make_orchestrator, fetcher, toolchain):
        make_orchestrator(fetcher, toolchain).build_package()
        fetched = len(fetcher.calls)
        make_orchestrator(fetcher, toolchain).build_package()
        assert len(fetcher.calls) == fetched

    def test_run_record_lists_every_stage(self, make_orchestrator, fetcher, toolchain, settings):
        orchestrator = make_orchestrator(fetcher, toolchain)
        orchestrator.build_image()
        record = json.loads((settings.output_path / "runs" / f"{orchestrator.run_id}.json").read_text())
        assert [s["stage_id"] for s in record["stages"]] == ["s0_resolve", "s1_compile", "s2_assemble"]
        assert set(record["states"].values()) == {"passed"}


class TestGating:
    def test_hash_mismatch_means_no_compile(self, make_orchestrator, fetcher, toolchain, registry_url):
        fetcher.add(registry_url("itoa", "1.0.9"), b"substituted payload")
        orchestrator = make_orchestrator(fetcher, toolchain)
        spy = _AssembleSpy(orchestrator)

        with pytest.raises(HashMismatch) as excinfo:
            orchestrator.build_image()

        assert excinfo.value.identifier == "itoa-1.0.9"
        assert toolchain.build_calls == 0
        assert spy.calls == 0
        assert "verified_dependencies" not in orchestrator.run_context

    def test_failing_compile_never_assembles(self, make_orchestrator, fetcher, make_toolchain, settings):
        toolchain = make_toolchain(build_returncode=101, build_output="error: aborting due to previous error\n")
        orchestrator = make_orchestrator(fetcher, toolchain)
        spy = _AssembleSpy(orchestrator)

        with pytest.raises(CompileError) as excinfo:
            orchestrator.build_image()

        assert excinfo.value.log
        assert "aborting" in excinfo.value.log
        assert spy.calls == 0
        assert orchestrator.states["s2_assemble"] == StageState.BLOCKED
        assert not (settings.output_path / "hello-latest.tar").exists()

    def test_network_attempt_never_assembles(self, make_orchestrator, fetcher, make_toolchain):
        toolchain = make_toolchain(
            build_output="warning: spurious network error: failed to connect to index.crates.io\n"
        )
        orchestrator = make_orchestrator(fetcher, toolchain)
        spy = _AssembleSpy(orchestrator)
        with pytest.raises(NetworkAccessAttempt):
            orchestrator.build_image()
        assert spy.calls == 0

    def test_git_dependency_pinned_by_output_hash(
        self, make_orchestrator, build_config, make_fetcher, toolchain, make_crate, make_lock,
        registry_package, registry_url, itoa_crate, ryu_crate,
    ):
        git_crate = make_crate("schedule-api", "0.0.1")
        source = "git+https://github.com/example/schedule-api?rev=main#abc1234"
        build_config.resolved_lock_file.write_text(make_lock([
            {"name": "hello", "version": "0.1.0"},
            registry_package("itoa", "1.0.9", itoa_crate),
            {"name": "schedule-api", "version": "0.0.1", "source": source},
        ]))
        config = build_config.model_copy(
            update={"output_hashes": {"schedule-api-0.0.1": digest_bytes(git_crate).sri}}
        )
        fetcher = make_fetcher({
            registry_url("itoa", "1.0.9"): [itoa_crate],
            "https://github.com/example/schedule-api/archive/abc1234.tar.gz": [git_crate],
        })
        artifact = make_orchestrator(fetcher, toolchain, config=config).build_package()

        assert toolchain.vendored == ["itoa-1.0.9", "schedule-api-0.0.1"]
        assert "git+https://github.com/example/schedule-api?rev=main" in toolchain.cargo_config
        assert artifact.metadata.dependency_set_address.startswith("sha256:")
