#!/usr/bin/env python3
"""
NFCom Command Line Interface

Usage:
    nfcom sign --document <file> --cert <bundle> [--passphrase <pw>] [--output <file>]
    nfcom verify --document <file> [--cert <bundle>]
    nfcom submit --document <file> --cert <bundle> [--passphrase <pw>] [--output <file>]
    nfcom status --cert <bundle>
    nfcom query --key <access key> --cert <bundle>
    nfcom void --series <n> --first <n> --last <n> --justification <text> --cert <bundle>
    nfcom check-digit <43 or 44 digits>
    nfcom normalize --document <file>

Endpoint settings come from NFCOM_* environment variables. The certificate
passphrase may also be given in NFCOM_CERT_PASSWORD.
"""

import argparse
import json
import os
import sys
from pathlib import Path


def load_text(path: str) -> str:
    """Read a document from file, or stdin for '-'."""
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def save_text(data: str, path: str):
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)


def load_cli_credential(args):
    from nfcom import load_credential

    passphrase = args.passphrase or os.environ.get("NFCOM_CERT_PASSWORD")
    return load_credential(args.cert, passphrase)


def cmd_sign(args):
    """Sign a document."""
    from nfcom import sign_document

    credential = load_cli_credential(args)
    signed = sign_document(load_text(args.document), credential)

    if args.output:
        save_text(signed.xml, args.output)
        print(f"Signed document saved to: {args.output}", file=sys.stderr)
    else:
        print(signed.xml)

    print(f"Reference: {signed.reference_uri}", file=sys.stderr)
    print(f"Digest: {signed.digest_value}", file=sys.stderr)
    return 0


def cmd_verify(args):
    """Verify the signature of a signed document."""
    from nfcom import verify_signature

    certificate = load_cli_credential(args).certificate if args.cert else None

    if verify_signature(load_text(args.document), certificate):
        print("✓ Signature valid")
        return 0
    print("✗ Signature INVALID")
    return 1


def cmd_submit(args):
    """Sign and submit a document to the authority."""
    from nfcom import Authorized, EndpointConfig, SubmissionOrchestrator

    config = EndpointConfig.from_env()
    credential = load_cli_credential(args)
    orchestrator = SubmissionOrchestrator(config)

    outcome = orchestrator.submit(load_text(args.document), credential)
    print(json.dumps(outcome.to_dict(), indent=2))

    if isinstance(outcome, Authorized):
        if args.output and outcome.confirmed_document:
            save_text(outcome.confirmed_document, args.output)
            print(f"Confirmed document saved to: {args.output}", file=sys.stderr)
        print(f"\n✓ AUTHORIZED protocol {outcome.protocol_number}", file=sys.stderr)
        return 0

    print(f"\n✗ {outcome.kind.value} [{outcome.code}] {outcome.reason}", file=sys.stderr)
    return 1


def cmd_status(args):
    """Check whether the reception service is operating."""
    from nfcom import EndpointConfig, SubmissionOrchestrator

    orchestrator = SubmissionOrchestrator(EndpointConfig.from_env())
    status = orchestrator.service_status(load_cli_credential(args))

    print(f"[{status.code}] {status.reason}")
    if status.average_time:
        print(f"Average time: {status.average_time}s")
    return 0 if status.online else 1


def cmd_query(args):
    """Query the situation of a document by access key."""
    from nfcom import EndpointConfig, SubmissionOrchestrator, is_valid_access_key

    if not is_valid_access_key(args.key):
        print(f"✗ Invalid access key: {args.key}", file=sys.stderr)
        return 1

    orchestrator = SubmissionOrchestrator(EndpointConfig.from_env())
    result = orchestrator.query(args.key, load_cli_credential(args))

    print(f"{result.situation.value} [{result.code}] {result.reason}")
    if result.protocol_number:
        print(f"Protocol: {result.protocol_number} at {result.authority_timestamp}")
    return 0


def cmd_void(args):
    """Void a range of unused document numbers."""
    from nfcom import EndpointConfig, SubmissionOrchestrator

    orchestrator = SubmissionOrchestrator(EndpointConfig.from_env())
    result = orchestrator.void_range(
        args.series, args.first, args.last, args.justification, load_cli_credential(args), cnpj=args.cnpj
    )

    print(f"[{result.code}] {result.reason}")
    if result.voided:
        print(f"✓ VOIDED protocol {result.protocol_number}", file=sys.stderr)
        return 0
    print(f"✗ Numbers {args.first}..{args.last} not voided", file=sys.stderr)
    return 1


def cmd_check_digit(args):
    """Compute (43 digits) or validate (44 digits) an access key check digit."""
    from nfcom.access_key import ACCESS_KEY_LENGTH, compute_check_digit, is_valid_access_key

    digits = args.digits.strip()
    if len(digits) == ACCESS_KEY_LENGTH:
        if is_valid_access_key(digits):
            print(f"✓ {digits}")
            return 0
        print(f"✗ Check digit mismatch: {digits}", file=sys.stderr)
        return 1

    try:
        digit = compute_check_digit(digits)
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    print(f"{digits}{digit}")
    return 0


def cmd_normalize(args):
    """Print a document stripped of formatting."""
    from nfcom.transport import normalize

    print(normalize(load_text(args.document)))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="nfcom",
        description="NFCom submission CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nfcom sign -d nfcom.xml -c cert.pfx -p secret -o signed.xml
  nfcom verify -d signed.xml
  nfcom submit -d nfcom.xml -c cert.pfx -o nfcomProc.xml
  nfcom status -c cert.pfx
  nfcom query -k 26240112345678000195620010000000011000000011 -c cert.pfx
  nfcom void -s 1 -f 10 -l 12 -j "Falha no sistema emissor" -c cert.pfx
  nfcom check-digit 2624011234567800019562001000000001100000001
        """
    )
    parser.add_argument("--log-level", default=os.environ.get("NFCOM_LOG_LEVEL", "WARNING"),
                        help="Log level (default WARNING)")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_cert_args(p, required=True):
        p.add_argument("-c", "--cert", required=required, help="PKCS#12 or PEM bundle")
        p.add_argument("-p", "--passphrase", help="Bundle passphrase")

    # sign
    sign_parser = subparsers.add_parser("sign", help="Sign a document")
    sign_parser.add_argument("-d", "--document", required=True, help="Unsigned XML file ('-' for stdin)")
    sign_parser.add_argument("-o", "--output", help="Output file for signed XML")
    add_cert_args(sign_parser)

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a signed document")
    verify_parser.add_argument("-d", "--document", required=True, help="Signed XML file ('-' for stdin)")
    add_cert_args(verify_parser, required=False)

    # submit
    submit_parser = subparsers.add_parser("submit", help="Sign and submit a document")
    submit_parser.add_argument("-d", "--document", required=True, help="Unsigned XML file ('-' for stdin)")
    submit_parser.add_argument("-o", "--output", help="Output file for the confirmed document")
    add_cert_args(submit_parser)

    # status
    status_parser = subparsers.add_parser("status", help="Query service status")
    add_cert_args(status_parser)

    # query
    query_parser = subparsers.add_parser("query", help="Query a document by access key")
    query_parser.add_argument("-k", "--key", required=True, help="44-digit access key")
    add_cert_args(query_parser)

    # void
    void_parser = subparsers.add_parser("void", help="Void a range of unused document numbers")
    void_parser.add_argument("-s", "--series", type=int, required=True, help="Document series")
    void_parser.add_argument("-f", "--first", type=int, required=True, help="First number of the range")
    void_parser.add_argument("-l", "--last", type=int, required=True, help="Last number of the range")
    void_parser.add_argument("-j", "--justification", required=True, help="Reason, 15 to 255 characters")
    void_parser.add_argument("--cnpj", help="Issuer CNPJ (default: from the certificate)")
    add_cert_args(void_parser)

    # check-digit
    check_parser = subparsers.add_parser("check-digit", help="Compute or validate an access key check digit")
    check_parser.add_argument("digits", help="43 digits to complete, or 44 to validate")

    # normalize
    normalize_parser = subparsers.add_parser("normalize", help="Strip formatting from a document")
    normalize_parser.add_argument("-d", "--document", required=True, help="XML file ('-' for stdin)")

    args = parser.parse_args(argv)

    from nfcom.errors import NFComError
    from nfcom.logging_config import configure_logging

    configure_logging(level=args.log_level, json_format=args.log_json)

    commands = {
        "sign": cmd_sign,
        "verify": cmd_verify,
        "submit": cmd_submit,
        "status": cmd_status,
        "query": cmd_query,
        "void": cmd_void,
        "check-digit": cmd_check_digit,
        "normalize": cmd_normalize,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return command(args)
    except NFComError as e:
        print(f"✗ {type(e).__name__}: {e.message}", file=sys.stderr)
        if e.attempts:
            print(f"  after {e.attempts} attempts", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
