#!/usr/bin/env python3
"""
Administrative commands for the e-Visit permit system.

Usage:
    evisit-admin init-db
    evisit-admin sweep-overstays
    evisit-admin screen --national-id 19901234567 --phone +9647501234567 --name "Ahmad Hassan"
    evisit-admin verify-qr '{"applicationId": "...", "timestamp": "...", "signature": "..."}'
"""

import argparse
import json
import logging
import sys

from evisit.config_manager import ConfigManager, ConfigurationError
from evisit.database.connection import close_db, init_db
from evisit.database.risk_service import RiskScoringEngine
from evisit.log_utils import configure_logging
from evisit.services import build_codec, build_services

logger = logging.getLogger(__name__)


def cmd_init_db(config: ConfigManager, args) -> int:
    db = init_db(config.database)
    db.create_tables()
    logger.info("Schema ready")
    return 0


def cmd_sweep(config: ConfigManager, args) -> int:
    db = init_db(config.database)
    services = build_services(config, db)
    try:
        report = services.overstay.detect_and_flag_overstays()
    finally:
        services.close()
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


def cmd_screen(config: ConfigManager, args) -> int:
    db = init_db(config.database)
    with db.session_scope() as session:
        assessment = RiskScoringEngine(session, config.screening).screen(
            args.national_id, args.phone, args.name
        )
    print(json.dumps(assessment.to_dict(), indent=2))
    return 0


def cmd_verify_qr(config: ConfigManager, args) -> int:
    result = build_codec(config).parse_and_verify(args.payload)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.ok else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evisit-admin", description="KRG e-Visit administration")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables").set_defaults(func=cmd_init_db)
    sub.add_parser("sweep-overstays", help="Run one overstay sweep").set_defaults(func=cmd_sweep)

    screen = sub.add_parser("screen", help="Preview risk screening for an identity")
    screen.add_argument("--national-id", required=True)
    screen.add_argument("--phone", required=True)
    screen.add_argument("--name", default="")
    screen.set_defaults(func=cmd_screen)

    verify = sub.add_parser("verify-qr", help="Check a scanned permit payload offline")
    verify.add_argument("payload")
    verify.set_defaults(func=cmd_verify_qr)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = ConfigManager(args.config)
    configure_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config.validate()
        return args.func(config, args)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 3
    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())
