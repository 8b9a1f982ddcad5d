import os
import sys
import argparse
import logging
import threading
import atexit
from signal import SIGINT , SIGTERM , signal

from . import db
from .config import load_config
from .logging_config import configure_logging
from .clients.relay_client import RelayClient
from .clients.soroban_client import SorobanLedgerClient
from .core.farm import Farm
from .core.farmer import Farmer , FarmerRegistry
from .core.harvester import Harvester
from .core.mining import MiningProcessController
from .core.state import Session
from .core.strategy import load_strategy
from .web.stats_persistence import load_farmer_stats , save_farmer_stats


def build_farmers(cfg , ledger) -> FarmerRegistry :
    """Register each configured secret with the ledger; the registry keeps only addresses."""
    farmers = FarmerRegistry()
    for entry in cfg["farmers"] :
        address = ledger.add_signer(entry["secret"])
        farmers.add(
            Farmer(
                address = address ,
                stake = entry["stake"] ,
                difficulty = entry["difficulty"] ,
                min_work_time = entry["min_work_time"] ,
                harvest_only = entry["harvest_only"] ,
            )
        )
    return farmers


def build_farm(cfg , session: Session) -> Farm :
    relay = None
    relay_cfg = cfg["relay"]
    if relay_cfg["enabled"] :
        relay = RelayClient(relay_cfg["url"] , relay_cfg["token"] , session = session , timeout = cfg["stellar"]["request_timeout_secs"])
    ledger = SorobanLedgerClient(cfg , relay = relay)
    farmers = build_farmers(cfg , ledger)
    load_farmer_stats(farmers)

    miner_cfg = cfg["miner"]
    miner = MiningProcessController(
        miner_cfg["executable"] ,
        session ,
        max_threads = miner_cfg["max_threads"] ,
        batch_size = miner_cfg["batch_size"] ,
        device = miner_cfg["device"] ,
        gpu = miner_cfg["gpu"] ,
        verbose = miner_cfg["verbose"] ,
    )
    harvester_cfg = cfg["harvester"]
    harvester = Harvester(
        ledger ,
        farmers ,
        retry_count = harvester_cfg["retry_count"] ,
        tractor_contract = harvester_cfg["tractor"]["contract"] ,
        tractor_frequency = harvester_cfg["tractor"]["frequency"] ,
        on_abandon = db.record_abandoned ,
    )
    return Farm(
        cfg ,
        ledger ,
        farmers ,
        harvester ,
        miner ,
        strategy = load_strategy(cfg["farm"]["strategy"]) ,
        session = session ,
        stats_saver = lambda : save_farmer_stats(farmers) ,
    )


def main() :
    parser = argparse.ArgumentParser(prog = "kalerig")
    parser.add_argument("--config" , required = False , help = "Path to config.toml")
    parser.add_argument("--web-port" , type = int , required = False , help = "Web dashboard port (default: 3002)")
    parser.add_argument("--no-web" , action = "store_true" , help = "Disable web dashboard")
    parser.add_argument("--log-level" , required = False , help = "Logging level (DEBUG, INFO, ...)")
    parser.add_argument("--verbose" , "-v" , action = "store_true" , help = "Log miner output")
    args = parser.parse_args()

    if args.config :
        os.environ["CONFIG_FILE"] = args.config

    try :
        cfg = load_config(args.config)
    except (OSError , ValueError) as e :
        print(f"Error: invalid configuration: {e}")
        sys.exit(2)

    log_cfg = cfg["logging"]
    configure_logging(args.log_level or log_cfg["level"] , log_cfg["file"] or None , verbose = args.verbose)
    logger = logging.getLogger("KaleRig")

    if not cfg["farmers"] :
        logger.error("No farmers configured. Add at least one [[farmers]] entry with a secret to config.toml.")
        sys.exit(2)

    session = Session()
    try :
        farm = build_farm(cfg , session)
    except (ValueError , ImportError , AttributeError) as e :
        logger.error(f"Failed to set up farm: {e}")
        sys.exit(2)

    def _handle_signal(signal_received , frame) :
        logger.info("Terminating farm, please wait…")
        farm.stop()

    signal(SIGINT , _handle_signal)
    signal(SIGTERM , _handle_signal)

    web_cfg = cfg["web"]
    if web_cfg["enabled"] and not args.no_web :
        from .web.server import start_web_server
        web_port = args.web_port or web_cfg["port"]
        web_thread = threading.Thread(target = start_web_server , args = (web_cfg["host"] , web_port , farm) , daemon = True)
        web_thread.start()
        logger.info("Web dashboard started on port %s" , web_port)

    # Register shutdown handler to save statistics
    atexit.register(save_farmer_stats , farm.farmers)

    try :
        logger.info("Starting farm with %s farmers..." , len(farm.farmers))
        farm.run()
    finally :
        try :
            farm.ledger.close()
        except Exception as e :
            logger.debug(f"Error closing ledger client: {e}")


if __name__ == "__main__" :
    main()
