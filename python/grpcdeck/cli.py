"""
Reflection-driven gRPC client: one-shot commands and an interactive REPL.

Usage:
    # List services
    grpcdeck list

    # List methods
    grpcdeck list helloworld.Greeter

    # Describe a service, method or message
    grpcdeck describe helloworld.Greeter/SayHello

    # Call with metadata
    grpcdeck --server api.example.com:443 --tls call \\
        helloworld.Greeter/SayHello '{"name": "world"}' -H authorization:'Bearer abc'

    # Client / bidi streams take a JSON array, one element per message
    grpcdeck call demo.Streamer/Sum '[{"value": 1}, {"value": 2}]'

    # Interactive REPL
    grpcdeck repl
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from grpcdeck.classify import classify
from grpcdeck.config import Config, configure_logging
from grpcdeck.domain import (
    Endpoint,
    SecurityProfile,
    StreamType,
    TLSFiles,
    format_byte_size,
    format_duration,
)
from grpcdeck.errors import GrpcDeckError, ValidationError
from grpcdeck.invoker import UnaryResult
from grpcdeck.metadata import parse_header
from grpcdeck.repl.view.response import view_describe, view_error, view_methods
from grpcdeck.schema import MethodDescriptor, ServiceDescriptor
from grpcdeck.session import Session

log = logging.getLogger(__name__)

EXIT_OK        = 0
EXIT_FAILURE   = 1
EXIT_USAGE     = 2
EXIT_INTERRUPT = 130


# ──────────────────────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grpcdeck",
        description="gRPC reflection client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--server",  default="localhost:50051")
    parser.add_argument("--tls",     action="store_true", help="Use TLS")
    parser.add_argument("--insecure-skip-verify", action="store_true",
                        help="TLS without certificate verification")
    parser.add_argument("--ca-file", default="", help="PEM CA bundle")
    parser.add_argument("--cert",    default="", help="PEM client certificate")
    parser.add_argument("--key",     default="", help="PEM client key")
    parser.add_argument("--timeout", type=float, help="Call deadline in seconds")
    parser.add_argument("--debug",   action="store_true", help="Verbose logging")

    sub = parser.add_subparsers(dest="command")

    # list
    lp = sub.add_parser("list", help="List services, or the methods of one")
    lp.add_argument("service", nargs="?")

    # describe
    dp = sub.add_parser("describe", help="Describe a service, method or message")
    dp.add_argument("symbol")

    # call
    cp = sub.add_parser("call", help="Invoke a method")
    cp.add_argument("method")
    cp.add_argument("request", nargs="?", default="{}")
    cp.add_argument("-H", "--header", action="append", default=[],
                    metavar="KEY:VALUE", help="Request metadata (repeatable)")

    # repl
    rp = sub.add_parser("repl", help="Start interactive REPL")
    rp.add_argument("--offline", action="store_true",
                    help="Start without connecting to --server")

    return parser


def endpoint_from_args(args: argparse.Namespace) -> Endpoint:
    profile = SecurityProfile.from_flags(
        args.tls or args.insecure_skip_verify or bool(args.ca_file or args.cert),
        args.insecure_skip_verify,
    )
    endpoint = Endpoint(
        args.server,
        profile,
        timeout=args.timeout,
        tls=TLSFiles(ca_file=args.ca_file, cert_file=args.cert, key_file=args.key),
    )
    endpoint.validate()
    return endpoint


# ──────────────────────────────────────────────────────────────────────────────
# CLI main
# ──────────────────────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args   = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    config = Config.from_env()
    configure_logging(config.debug or args.debug)

    try:
        endpoint = endpoint_from_args(args)
    except ValidationError as exc:
        print(f"❌ {exc}")
        return EXIT_USAGE

    session = Session(config)
    try:
        if args.command == "repl":
            # Import here to avoid pulling in prompt_toolkit for one-shot use
            from grpcdeck.repl.tea.runtime import ReplRuntime
            ReplRuntime(session, None if args.offline else endpoint).run()
            return EXIT_OK

        session.connect(endpoint)
        if args.command == "list":
            _cmd_list(session, args)
        elif args.command == "describe":
            _cmd_describe(session, args)
        elif args.command == "call":
            return _cmd_call(session, args)
        return EXIT_OK

    except GrpcDeckError as exc:
        print(view_error(classify(exc)))
        log.debug("command failed", exc_info=True)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        session.cancel()
        print("\n⚠️  Interrupted")
        return EXIT_INTERRUPT
    finally:
        session.close()


# ──────────────────────────────────────────────────────────────────────────────
# Sub-command implementations
# ──────────────────────────────────────────────────────────────────────────────

def _cmd_list(session: Session, args: argparse.Namespace) -> None:
    if args.service:
        service = session.schema.resolve_service(args.service)
        print(f"📋 Service: {service.full_name}\n")
        print(view_methods(service))
        return

    print("📋 Available services:")
    for svc in session.services():
        suffix = f"  ⚠ {svc.error}" if svc.error else ""
        print(f"  • {svc.full_name}{suffix}")


def _cmd_describe(session: Session, args: argparse.Namespace) -> None:
    obj = session.describe(args.symbol)
    if isinstance(obj, MethodDescriptor):
        schema = session.schema
        print(f"📋 {obj.qualified}")
        print(view_describe(obj, (
            schema.resolve_message(obj.input_type),
            schema.resolve_message(obj.output_type),
        )))
    elif isinstance(obj, ServiceDescriptor):
        print(f"📋 Service: {obj.full_name}")
        print(view_describe(obj))
    else:
        print(f"📋 Message: {obj.full_name}")
        print(view_describe(obj))


def _cmd_call(session: Session, args: argparse.Namespace) -> int:
    resolved = session.resolve(args.method)
    method   = resolved.method
    session.select_method(method.service, method.name)
    for raw in args.header:
        key, value = parse_header(raw)
        session.add_header(key, value)

    print(f"🚀 {method.qualified}")
    shape = method.stream_type
    if shape in (StreamType.UNARY, StreamType.SERVER_STREAM):
        session.set_request(args.request)
    result = session.send(args.timeout)

    if isinstance(result, UnaryResult):
        print(f"📥 {result.text}")
        print(f"   {format_duration(result.duration_ms)}  {format_byte_size(result.size)}")
        return EXIT_OK

    handle = result
    if shape in (StreamType.CLIENT_STREAM, StreamType.BIDI_STREAM):
        for text in _stream_inputs(args.request):
            handle.send(text)
        handle.close_send()

    count = 0
    for text in handle:
        count += 1
        print(f"📦 [{count}] {text}")
    handle.wait()
    print(f"   {handle.message_count} message(s) in {format_duration(handle.duration_ms)}")
    return EXIT_OK


def _stream_inputs(raw: str) -> list[str]:
    """A JSON array is one message per element; anything else is one message."""
    try:
        parsed = json.loads(raw)
    except ValueError:
        return [raw]
    if isinstance(parsed, list):
        return [json.dumps(item) for item in parsed]
    return [raw]


if __name__ == "__main__":
    sys.exit(main())
