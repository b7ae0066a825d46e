#!/usr/bin/env python3
"""
Sentinel Agent - Command Line Interface

Usage:
    sentinel run [--cycles N]          Run the monitoring loop
    sentinel circuits                  Show computation definition status
    sentinel init-circuits             Initialize missing computation definitions
    sentinel register <id>             Register an entity record for monitoring
    sentinel discover                  List entity records owned by the wallet
    sentinel derive <id>               Print derived addresses for an entity
    sentinel decode-record <data>      Decode an entity record (hex or base64)
    sentinel decode-log <line>         Decode a "Program data:" log line

Configuration is read from the environment (and a .env file, if present).
The ledger transport and MPC cipher are plugged in through
SENTINEL_TRANSPORT_FACTORY and SENTINEL_CIPHER_FACTORY ("module:callable");
the transport factory is called with the AgentConfig.

Exit codes: 0 ok, 1 error, 2 configuration or wallet error, 3 network key
unavailable.
"""

import argparse
import asyncio
import base64
import binascii
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from sentinel_agent.addresses import (
    Address,
    cluster_address,
    comp_def_address,
    entity_address,
    executing_pool_address,
    mempool_address,
    mxe_address,
    sign_pda_address,
)
from sentinel_agent.agent import SentinelAgent, build_context
from sentinel_agent.codec import decode_entity_record, decode_event_envelope, decode_event_payload
from sentinel_agent.config import AgentConfig, load_factory
from sentinel_agent.errors import (
    SENTINEL_E_CONFIG,
    ConfigError,
    KeyUnavailable,
    SentinelError,
    WalletError,
    sentinel_error,
)
from sentinel_agent.orchestrator import CIRCUITS, Orchestrator
from sentinel_agent.ratelimit import parse_interval
from sentinel_agent.signing import WalletSigner

logger = logging.getLogger("sentinel_agent")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_KEY_UNAVAILABLE = 3


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _make_transport(cfg: AgentConfig):
    if not cfg.transport_factory:
        raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, "SENTINEL_TRANSPORT_FACTORY is not set")
    return load_factory(cfg.transport_factory)(cfg)


def _make_orchestrator(cfg: AgentConfig, signer: WalletSigner) -> Orchestrator:
    return Orchestrator(
        transport=_make_transport(cfg),
        signer=signer,
        program=cfg.program,
        network_program=cfg.network_program,
        cluster_offset=cfg.cluster_offset,
    )


# ---------------------------
# Commands
# ---------------------------

async def cmd_run(args, cfg: AgentConfig) -> int:
    if args.interval:
        cfg.check_interval_ms = int(parse_interval(args.interval) * 1000)
    if args.status_port is not None:
        cfg.status_port = args.status_port
    if not cfg.cipher_factory:
        raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, "SENTINEL_CIPHER_FACTORY is not set")

    print("=" * 60)
    print("  Sentinel DeFi Security Agent")
    print("  Privacy-Preserving Position Monitoring via MPC")
    print("=" * 60)

    signer = WalletSigner.from_file(cfg.wallet_path)
    logger.info("Agent wallet: %s", signer.public_key)
    logger.info("Program: %s | Cluster offset: %d", cfg.program_id, cfg.cluster_offset)

    transport = _make_transport(cfg)
    cipher_factory = load_factory(cfg.cipher_factory)
    logger.info("Initializing encryption...")
    ctx = await build_context(cfg, signer, transport, cipher_factory)
    agent = SentinelAgent(ctx)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.stop)
        except (NotImplementedError, RuntimeError):
            pass

    status_task = None
    if cfg.status_port:
        from sentinel_agent.server import create_app, start_status_server

        app = create_app(
            ctx.stats,
            state=lambda: {
                "subscription_alive": agent.dispatcher.alive,
                "entities": len(agent.orchestrator.entities),
            },
        )
        status_task = start_status_server(app, args.status_host, cfg.status_port)

    logger.info("Starting monitoring loop (every %.0fs)... Press Ctrl+C to stop", cfg.interval_s)
    try:
        await agent.run(max_cycles=args.cycles)
    finally:
        if status_task is not None:
            status_task.cancel()
            try:
                await status_task
            except asyncio.CancelledError:
                pass
    return EXIT_OK


async def cmd_circuits(args, cfg: AgentConfig) -> int:
    orch = _make_orchestrator(cfg, WalletSigner.from_file(cfg.wallet_path))
    statuses = await orch.circuit_status()
    for s in statuses:
        mark = "initialized" if s.initialized else "MISSING"
        print(f"  {s.name:<24} {mark:<12} {s.address}")
    return EXIT_OK if all(s.initialized for s in statuses) else EXIT_ERROR


async def cmd_init_circuits(args, cfg: AgentConfig) -> int:
    orch = _make_orchestrator(cfg, WalletSigner.from_file(cfg.wallet_path))
    results = await orch.ensure_computation_definitions()
    for name, sig in results.items():
        print(f"  {name:<24} {'already initialized' if sig is None else sig}")
    return EXIT_OK


async def cmd_register(args, cfg: AgentConfig) -> int:
    orch = _make_orchestrator(cfg, WalletSigner.from_file(cfg.wallet_path))
    sig = await orch.register_entity(args.entity_id)
    if sig is None:
        print(f"Entity {args.entity_id} already registered at {orch.record_address(args.entity_id)}")
    else:
        print(f"Registered entity {args.entity_id}: {sig}")
    return EXIT_OK


async def cmd_discover(args, cfg: AgentConfig) -> int:
    orch = _make_orchestrator(cfg, WalletSigner.from_file(cfg.wallet_path))
    owner = Address.from_string(args.owner) if args.owner else None
    rows = await orch.discover_entities(owner)
    if not rows:
        print("No entity records found")
    for address, record in rows:
        state = "active" if record.is_active else "inactive"
        print(f"  #{record.entity_id:<6} {state:<9} last_check={record.last_check:<12} {address}")
    return EXIT_OK


def cmd_derive(args, cfg: AgentConfig) -> int:
    if args.owner:
        owner = Address.from_string(args.owner)
    else:
        owner = WalletSigner.from_file(cfg.wallet_path).public_key
    program, np = cfg.program, cfg.network_program
    record, bump = entity_address(owner, args.entity_id, program)
    out: Dict[str, Any] = {
        "owner": str(owner),
        "entity_record": {"address": str(record), "bump": bump},
        "sign_pda_account": str(sign_pda_address(program)),
        "mxe_account": str(mxe_address(program, np)),
        "cluster_account": str(cluster_address(cfg.cluster_offset, np)),
        "mempool_account": str(mempool_address(cfg.cluster_offset, np)),
        "executing_pool": str(executing_pool_address(cfg.cluster_offset, np)),
        "comp_def_accounts": {name: str(comp_def_address(program, name, np)) for name, _ in CIRCUITS},
    }
    _print_json(out)
    return EXIT_OK


def _parse_bytes(text: str) -> Optional[bytes]:
    s = text.strip()
    if s.lower().startswith("0x"):
        s = s[2:]
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        return None


def cmd_decode_record(args, cfg: AgentConfig) -> int:
    data = _parse_bytes(args.data)
    record = decode_entity_record(data) if data is not None else None
    if record is None:
        print("ERROR: not an entity record", file=sys.stderr)
        return EXIT_ERROR
    _print_json(
        {
            "bump": record.bump,
            "entity_id": record.entity_id,
            "owner": str(Address(record.owner)),
            "nonce": str(record.nonce),
            "last_check": record.last_check,
            "is_active": record.is_active,
        }
    )
    return EXIT_OK


def cmd_decode_log(args, cfg: AgentConfig) -> int:
    envelope = decode_event_envelope(args.line)
    if envelope is None:
        print("ERROR: not a program data line", file=sys.stderr)
        return EXIT_ERROR
    tag, payload = envelope
    event = decode_event_payload(tag, payload)
    fields = {k: v for k, v in vars(event).items()}
    for k, v in list(fields.items()):
        if isinstance(v, bytes):
            fields[k] = str(Address(v)) if len(v) == 32 else v.hex()
    _print_json({"kind": event.kind, "tag": list(tag), **fields})
    return EXIT_OK


_ASYNC_COMMANDS = {cmd_run, cmd_circuits, cmd_init_circuits, cmd_register, cmd_discover}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Sentinel Agent CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--env-file", default=None, help="Load environment from this file (default: .env)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the monitoring loop")
    run_parser.add_argument("--interval", help="Cycle interval, e.g. 30s or 2m (default: CHECK_INTERVAL_MS)")
    run_parser.add_argument("--cycles", type=int, default=None, help="Stop after N cycles")
    run_parser.add_argument("--status-port", type=int, default=None, help="Serve /v1/health, /v1/stats, /metrics")
    run_parser.add_argument("--status-host", default="127.0.0.1", help="Status server bind host")
    run_parser.set_defaults(func=cmd_run)

    circuits_parser = subparsers.add_parser("circuits", help="Show computation definition status")
    circuits_parser.set_defaults(func=cmd_circuits)

    init_parser = subparsers.add_parser("init-circuits", help="Initialize missing computation definitions")
    init_parser.set_defaults(func=cmd_init_circuits)

    register_parser = subparsers.add_parser("register", help="Register an entity record")
    register_parser.add_argument("entity_id", type=int, help="Entity id (u32)")
    register_parser.set_defaults(func=cmd_register)

    discover_parser = subparsers.add_parser("discover", help="List entity records for an owner")
    discover_parser.add_argument("--owner", help="Owner address (default: wallet)")
    discover_parser.set_defaults(func=cmd_discover)

    derive_parser = subparsers.add_parser("derive", help="Print derived addresses for an entity")
    derive_parser.add_argument("entity_id", type=int, help="Entity id (u32)")
    derive_parser.add_argument("--owner", help="Owner address (default: wallet)")
    derive_parser.set_defaults(func=cmd_derive)

    record_parser = subparsers.add_parser("decode-record", help="Decode entity record bytes")
    record_parser.add_argument("data", help="Record bytes as hex or base64")
    record_parser.set_defaults(func=cmd_decode_record)

    log_parser = subparsers.add_parser("decode-log", help="Decode a program log line")
    log_parser.add_argument("line", help='Log line starting with "Program data: "')
    log_parser.set_defaults(func=cmd_decode_log)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_ERROR

    setup_logging(args.verbose)
    load_dotenv(args.env_file)

    try:
        cfg = AgentConfig.from_env()
        if args.func in _ASYNC_COMMANDS:
            return asyncio.run(args.func(args, cfg))
        return args.func(args, cfg)
    except (ConfigError, WalletError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyUnavailable as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_KEY_UNAVAILABLE
    except SentinelError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
