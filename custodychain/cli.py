#!/usr/bin/env python3
"""
Custody Chain Command Line Interface

Usage:
    custody hash --file <record.json>
    custody hash-bytes --file <document>
    custody verify --package <package.json>
    custody demo
"""

import argparse
import json
import sys


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r') as f:
        return json.load(f)


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)


def cmd_hash(args):
    """Fingerprint a JSON record."""
    from custodychain import canonicalize_str, fingerprint

    data = load_json(args.file)
    if args.show_canonical:
        print(canonicalize_str(data), file=sys.stderr)
    print(f"sha256: {fingerprint(data, args.scheme)}")
    return 0


def cmd_hash_bytes(args):
    """Fingerprint raw file content, as done for documents."""
    from custodychain import fingerprint_of_bytes

    with open(args.file, 'rb') as f:
        digest = fingerprint_of_bytes(f.read())
    print(f"sha256: {digest}")
    return 0


def cmd_verify(args):
    """Verify an exported batch package offline."""
    from custodychain import verify_package

    package = load_json(args.package)
    reports = verify_package(package)
    if not reports:
        print("✗ Package contains no batches")
        return 1

    all_valid = True
    for report in reports:
        mark = "✓" if report.overall_valid else "✗"
        print(f"{mark} Batch {report.batch_id}: {'VALID' if report.overall_valid else 'INVALID'}")
        print(f"  Batch fingerprint: {'ok' if report.batch_fingerprint_valid else 'MISMATCH'}")
        for e in report.events:
            status = "ok" if e.hash_match else "MISMATCH"
            print(f"  {e.event_type:<15} {e.event_id}  {status}")
        for issue in report.chain_issues:
            print(f"  ! {issue}")
        for warning in report.anchor_warnings:
            print(f"  ~ {warning}", file=sys.stderr)
        all_valid = all_valid and report.overall_valid

    if args.output:
        save_json({"reports": [r.to_dict() for r in reports]}, args.output)
        print(f"Report saved to: {args.output}")
    return 0 if all_valid else 1


def cmd_demo(args):
    """Run the create / ship / receive / verify walkthrough."""
    from custodychain import (
        AnchorDispatcher,
        BatchInput,
        CustodyEngine,
        EventInput,
        EventType,
        Location,
        SimulatedAnchorGateway,
    )

    print("=" * 60)
    print("Custody Chain Demonstration")
    print("=" * 60)

    engine = CustodyEngine(dispatcher=AnchorDispatcher(SimulatedAnchorGateway(), immediate=True))

    miner = engine.register_party("Kivu Gold Cooperative", "MineOperator", "CD")
    carrier = engine.register_party("Great Lakes Freight", "Transporter", "RW")
    refinery = engine.register_party("Alpine Refining SA", "Refinery", "CH")
    mine = engine.register_facility("Kamituga Site 4", "Mine", miner.party_id, Location("CD", "South Kivu"))
    engine.register_facility("Mendrisio Refinery", "Refinery", refinery.party_id, Location("CH", "Ticino"))

    batch, create = engine.create_batch(BatchInput(
        external_reference="KGC-2024-0042",
        commodity_type="Gold Dore",
        origin_facility_id=mine.facility_id,
        owner_party_id=miner.party_id,
        weight=25.5,
    ))
    print(f"\nCreated batch {batch.batch_id} ({batch.external_reference})")
    print(f"  Create   sha256:{create.fingerprint}")

    ship = engine.append_event(batch.batch_id, EventInput(EventType.SHIP, to_party_id=carrier.party_id))
    print(f"  Ship     sha256:{ship.fingerprint}")
    receive = engine.append_event(batch.batch_id, EventInput(EventType.RECEIVE, to_party_id=refinery.party_id))
    print(f"  Receive  sha256:{receive.fingerprint}")
    print(f"Status: {engine.get_batch(batch.batch_id).status.value}")

    report = engine.verify_batch(batch.batch_id)
    print("\n" + "-" * 60)
    print(f"Verification: {'VALID' if report.overall_valid else 'INVALID'}")
    print("-" * 60)
    for e in report.events:
        print(f"  {e.event_type:<10} hash_match={e.hash_match} anchor_confirmed={e.anchor_confirmed}")

    if args.output:
        save_json(engine.export_batch_package(batch.batch_id), args.output)
        print(f"\nPackage saved to: {args.output}")

    engine.close()
    print("\n" + "=" * 60)
    print("Demonstration complete.")
    print("=" * 60)
    return 0 if report.overall_valid else 1


def main():
    parser = argparse.ArgumentParser(
        description="Custody Chain CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  custody demo -o package.json            Run demonstration and export
  custody verify -p package.json
  custody hash -f record.json
  custody hash-bytes -f assay-report.pdf
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Fingerprint a JSON record")
    hash_parser.add_argument("-f", "--file", required=True, help="JSON file to hash")
    hash_parser.add_argument("-s", "--scheme", default="1", help="Fingerprint scheme version")
    hash_parser.add_argument("--show-canonical", action="store_true", help="Print canonical form to stderr")

    # hash-bytes
    bytes_parser = subparsers.add_parser("hash-bytes", help="Fingerprint raw file content")
    bytes_parser.add_argument("-f", "--file", required=True, help="File to hash")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify an exported package")
    verify_parser.add_argument("-p", "--package", required=True, help="Package JSON file")
    verify_parser.add_argument("-o", "--output", help="Output file for verification report")

    # demo
    demo_parser = subparsers.add_parser("demo", help="Run demonstration")
    demo_parser.add_argument("-o", "--output", help="Output file for exported package")

    args = parser.parse_args()

    if args.command == "hash":
        sys.exit(cmd_hash(args))
    elif args.command == "hash-bytes":
        sys.exit(cmd_hash_bytes(args))
    elif args.command == "verify":
        sys.exit(cmd_verify(args))
    elif args.command == "demo":
        sys.exit(cmd_demo(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
