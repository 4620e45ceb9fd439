import json

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cnbresolve import cli
from cnbresolve.blob import UnexpectedBlobTypeError
from cnbresolve.cnb import BuilderRecord, BuildpackInfo, BuildRequest, BuiltImage, BuiltImageStack, RegistryCache
from cnbresolve.registry import ImageNotFoundError
from cnbresolve.test_utils import DIGEST_A, DIGEST_B, DIGEST_RUN

BUILD_YAML = """\
apiVersion: kpack.io/v1alpha2
kind: Build
metadata:
  name: hello-build-1
  namespace: builds
spec:
  tag: myregistry.io/apps/hello
  serviceAccountName: builder
  cache:
    registry:
      tag: myregistry.io/apps/hello-cache
"""


@pytest.fixture
def build_file(tmp_path: Path) -> Path:
    path = tmp_path / "build.yaml"
    path.write_text(BUILD_YAML)
    return path


def test_setup_arg_parser(tmp_path: Path) -> None:
    parser = cli.setup_arg_parser()
    assert parser.description == "Resolve build sources and image provenance."

    args = parser.parse_args(
        ["--retry-times", "2", "fetch-blob", "--url", "https://example.com/a.zip", "--dest", str(tmp_path)]
    )
    assert args.command == "fetch-blob"
    assert args.retry_times == 2
    assert args.dest == str(tmp_path)


def test_parse_build_manifest(build_file: Path) -> None:
    args = cli.setup_arg_parser().parse_args(["built-image", "--build", str(build_file)])
    assert args.build == BuildRequest(
        namespace="builds",
        tag="myregistry.io/apps/hello",
        service_account="builder",
        cache=RegistryCache(tag="myregistry.io/apps/hello-cache"),
    )


def test_parse_invalid_build_manifest(tmp_path: Path) -> None:
    path = tmp_path / "build.yaml"
    path.write_text("kind: Build\nspec: {}\n")
    with pytest.raises(SystemExit):
        cli.setup_arg_parser().parse_args(["built-image", "--build", str(path)])


def test_parse_missing_dest(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        cli.setup_arg_parser().parse_args(
            ["fetch-blob", "--url", "https://example.com/a.zip", "--dest", str(tmp_path / "missing")]
        )


@patch("cnbresolve.cli.Fetcher")
def test_main_fetch_blob(fetcher_cls: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    result_file = tmp_path / "result.json"
    rc = cli.main(
        [
            "--write-result-to",
            str(result_file),
            "--timeout",
            "5",
            "fetch-blob",
            "--url",
            "https://example.com/a.zip",
            "--dest",
            str(tmp_path),
        ]
    )

    assert rc == 0
    fetcher_cls.assert_called_once_with(timeout=5.0)
    fetcher_cls.return_value.fetch.assert_called_once_with(str(tmp_path), "https://example.com/a.zip")
    expected = {"status": "success", "dir": str(tmp_path.resolve())}
    assert json.loads(result_file.read_text()) == expected
    assert json.loads(capsys.readouterr().out) == expected


@patch("cnbresolve.cli.Fetcher")
def test_main_failure(fetcher_cls: MagicMock, tmp_path: Path) -> None:
    fetcher_cls.return_value.fetch.side_effect = UnexpectedBlobTypeError()
    result_file = tmp_path / "result.json"
    rc = cli.main(
        ["--write-result-to", str(result_file), "fetch-blob", "--url", "https://example.com/a", "--dest", str(tmp_path)]
    )

    assert rc == 1
    assert json.loads(result_file.read_text()) == {
        "status": "failure",
        "message": "unexpected blob file type, must be one of .zip, .tar.gz, .tar, .jar",
    }


@patch("cnbresolve.cli.retriever_from_args")
def test_main_built_image(retriever_from_args: MagicMock, build_file: Path, capsys: pytest.CaptureFixture) -> None:
    retriever_from_args.return_value.get_built_image.return_value = BuiltImage(
        identifier=f"myregistry.io/apps/hello@{DIGEST_A}",
        completed_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        buildpack_metadata=(BuildpackInfo("paketo-buildpacks/go", "1.0.0"),),
        stack=BuiltImageStack(run_image=f"myregistry.io/run@{DIGEST_RUN}", id="io.buildpacks.stacks.jammy"),
    )

    assert cli.main(["built-image", "--build", str(build_file)]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["status"] == "success"
    assert output["built_image"]["identifier"] == f"myregistry.io/apps/hello@{DIGEST_A}"
    assert output["built_image"]["completed_at"] == "2024-05-01T00:00:00+00:00"
    assert output["built_image"]["stack"]["id"] == "io.buildpacks.stacks.jammy"


@patch("cnbresolve.cli.retriever_from_args")
def test_main_cache_image(retriever_from_args: MagicMock, build_file: Path, capsys: pytest.CaptureFixture) -> None:
    retriever_from_args.return_value.get_cache_image.return_value = f"myregistry.io/apps/hello-cache@{DIGEST_B}"

    assert cli.main(["cache-image", "--build", str(build_file)]) == 0
    assert json.loads(capsys.readouterr().out) == {
        "status": "success",
        "cache_image": f"myregistry.io/apps/hello-cache@{DIGEST_B}",
    }


@patch("cnbresolve.cli.retriever_from_args")
def test_main_cache_image_not_found(retriever_from_args: MagicMock, build_file: Path, capsys) -> None:
    error = ImageNotFoundError("image myregistry.io/apps/hello-cache:latest is not found")
    error.add_note("unable to fetch cache image")
    retriever_from_args.return_value.get_cache_image.side_effect = error

    assert cli.main(["cache-image", "--build", str(build_file)]) == 1
    output = json.loads(capsys.readouterr().out)
    assert output["message"] == (
        "image myregistry.io/apps/hello-cache:latest is not found\nunable to fetch cache image"
    )


@patch("cnbresolve.cli.retriever_from_args")
def test_main_builder(retriever_from_args: MagicMock, capsys: pytest.CaptureFixture) -> None:
    retriever_from_args.return_value.get_builder.return_value = BuilderRecord(
        identifier=f"myregistry.io/builder@{DIGEST_A}",
        stack_id="io.buildpacks.stacks.jammy",
        run_image="myregistry.io/run:base",
    )

    rc = cli.main(
        [
            "builder",
            "--image",
            "myregistry.io/builder:base",
            "--namespace",
            "builds",
            "--pull-secret",
            "creds-a",
            "--pull-secret",
            "creds-b",
        ]
    )

    assert rc == 0
    request = retriever_from_args.return_value.get_builder.call_args.args[0]
    assert request.image_pull_secrets == ("creds-a", "creds-b")
    assert request.service_account == ""
    output = json.loads(capsys.readouterr().out)
    assert output["builder"]["stack_id"] == "io.buildpacks.stacks.jammy"


def test_retriever_from_args() -> None:
    args = cli.setup_arg_parser().parse_args(
        [
            "--skopeo",
            "/opt/skopeo",
            "--kubectl",
            "/opt/kubectl",
            "--retry-times",
            "1",
            "--timeout",
            "9",
            "builder",
            "--image",
            "myregistry.io/builder",
            "--namespace",
            "builds",
        ]
    )
    retriever = cli.retriever_from_args(args)
    assert retriever.keychain_factory.kubectl == "/opt/kubectl"
    assert retriever.keychain_factory.timeout == 9.0
    assert retriever.image_fetcher.skopeo == "/opt/skopeo"
    assert retriever.image_fetcher.retry_times == 1
