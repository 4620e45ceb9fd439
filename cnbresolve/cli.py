"""Command line entry point

Each subcommand prints a JSON result. With ``--write-result-to`` the result is
also written into a file, which is how a build step passes it on.
"""

import argparse
import json
import logging
import os
import sys

from typing import Any

import yaml

from cnbresolve.blob import DEFAULT_TIMEOUT, Fetcher
from cnbresolve.cnb import BuilderRequest, BuildRequest, RemoteMetadataRetriever
from cnbresolve.registry import KUBECTL, SKOPEO, ImageFetcher, KeychainFactory

logger = logging.getLogger("cnb-resolve")


def arg_type_dir(value):
    if not os.path.isdir(value):
        raise argparse.ArgumentTypeError(f"No directory exists at specified path {value}")
    return value


def arg_type_build(value) -> BuildRequest:
    try:
        with open(value) as f:
            manifest = yaml.safe_load(f)
        return BuildRequest.from_manifest(manifest)
    except (OSError, yaml.YAMLError, KeyError, AttributeError) as e:
        raise argparse.ArgumentTypeError(f"Cannot read Build manifest {value}: {e}")


def setup_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resolve build sources and image provenance.")
    parser.add_argument(
        "--write-result-to",
        metavar="FILE",
        dest="result_file",
        help="Write execution result into this file.",
    )
    parser.add_argument(
        "--skopeo",
        default=SKOPEO,
        help="Path to the skopeo executable. Defaults to %(default)s.",
    )
    parser.add_argument(
        "--kubectl",
        default=KUBECTL,
        help="Path to the kubectl executable. Defaults to %(default)s.",
    )
    parser.add_argument(
        "--retry-times",
        type=int,
        default=0,
        help="Number of times skopeo retries a failed registry request.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Timeout in seconds of every network request and subprocess.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_blob = subparsers.add_parser("fetch-blob", help="Download and extract a source blob.")
    fetch_blob.add_argument("--url", required=True, help="URL of a zip, jar, tar.gz or tar blob.")
    fetch_blob.add_argument(
        "--dest", required=True, metavar="PATH", type=arg_type_dir, help="Extract into this directory."
    )

    for name, help_text in (
        ("built-image", "Read the provenance of the image a Build produced."),
        ("cache-image", "Resolve the registry cache image of a Build."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--build",
            required=True,
            metavar="FILE",
            type=arg_type_build,
            help="Build resource manifest in YAML.",
        )

    builder = subparsers.add_parser("builder", help="Read the buildpacks and order of a builder image.")
    builder.add_argument("--image", required=True, help="The builder image reference.")
    builder.add_argument("--namespace", required=True, help="Namespace of the pull secrets.")
    builder.add_argument("--service-account", default="", help="Use the pull secrets of this service account.")
    builder.add_argument(
        "--pull-secret",
        action="append",
        default=[],
        dest="pull_secrets",
        metavar="NAME",
        help="Image pull secret. Can be specified multiple times.",
    )
    return parser


def retriever_from_args(args) -> RemoteMetadataRetriever:
    return RemoteMetadataRetriever(
        KeychainFactory(kubectl=args.kubectl, timeout=args.timeout),
        ImageFetcher(skopeo=args.skopeo, retry_times=args.retry_times, timeout=args.timeout),
    )


def execute(args) -> dict[str, Any]:
    if args.command == "fetch-blob":
        Fetcher(timeout=args.timeout).fetch(args.dest, args.url)
        return {"status": "success", "dir": os.path.realpath(args.dest)}

    retriever = retriever_from_args(args)
    if args.command == "built-image":
        return {"status": "success", "built_image": retriever.get_built_image(args.build).to_dict()}
    if args.command == "cache-image":
        return {"status": "success", "cache_image": retriever.get_cache_image(args.build)}

    request = BuilderRequest(
        namespace=args.namespace,
        image=args.image,
        service_account=args.service_account,
        image_pull_secrets=tuple(args.pull_secrets),
    )
    return {"status": "success", "builder": retriever.get_builder(request).to_dict()}


def main(argv: list[str] | None = None) -> int:
    level = logging.DEBUG if os.environ.get("CNB_RESOLVE_DEBUG") else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s:%(name)s:%(levelname)s:%(message)s")

    args = setup_arg_parser().parse_args(argv)
    try:
        result = execute(args)
    except Exception as e:
        result = {"status": "failure", "message": "\n".join([str(e), *getattr(e, "__notes__", [])])}
        logger.exception("failed to run %s", args.command)

    print(json.dumps(result))
    if args.result_file:
        logger.info("write result into file %s", args.result_file)
        with open(args.result_file, "w") as f:
            json.dump(result, f)

    if result["status"] == "success":
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
