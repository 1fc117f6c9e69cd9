"""
Main Application Entry Point
Command-line interface for running simulations
"""

import sys
import signal
import argparse
from pathlib import Path

from loguru import logger

from pedflow.config import ROUTING_CHOICES
from pedflow.exceptions import ConfigurationError
from pedflow.scenario import load_scenario
from pedflow.simulation_engine import Simulation
from pedflow.trajectories import CsvTrajectoryWriter


def configure_logging(level: str, log_file: str = None):
    """Replace the default sink by stderr at the given level, plus an optional file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(),
               format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                      "{extra[component]: <10} | {message}")
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB")
    logger.configure(extra={"component": "main"})


def main():
    """Main application entry point."""
    parser = argparse.ArgumentParser(
        description='Pedestrian dynamics simulation',
        epilog='Examples:\n'
               '  python main.py scenarios/single_room.yaml\n'
               '  python main.py scenarios/single_room.yaml --routing quickest --max-time 120\n'
               '  python main.py scenarios/single_room.yaml --output output/traj.csv --threads 4',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        'scenario',
        type=str,
        help='Path to the scenario YAML file'
    )
    parser.add_argument(
        '--output',
        type=str,
        help='Trajectory CSV file (overrides the scenario output section)'
    )
    parser.add_argument(
        '--pathways',
        type=str,
        help='CSV file receiving the door passages of every pedestrian (needs a trajectory output)'
    )
    parser.add_argument(
        '--routing',
        choices=ROUTING_CHOICES,
        help='Routing engine'
    )
    parser.add_argument(
        '--max-time',
        type=float,
        help='Maximum simulated time in seconds'
    )
    parser.add_argument(
        '--threads',
        type=int,
        help='Worker threads for the velocity update'
    )
    parser.add_argument(
        '--seed',
        type=int,
        help='Random seed'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        help='Log level (DEBUG, INFO, WARNING, ...)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Additional log file receiving DEBUG output'
    )

    args = parser.parse_args()
    configure_logging(args.log_level or "INFO", args.log_file)

    try:
        scenario = load_scenario(args.scenario)
        config = scenario.config
        # Command-line overrides
        if args.routing:
            config.routing = args.routing
        if args.max_time:
            config.max_sim_time = args.max_time
        if args.threads:
            config.num_threads = args.threads
        if args.seed is not None:
            config.seed = args.seed
        if not args.log_level and config.log_level.upper() != "INFO":
            configure_logging(config.log_level, args.log_file)

        output = args.output or scenario.output.get('trajectories')
        pathways = args.pathways or scenario.output.get('pathways')
        writer = None
        if output:
            writer = CsvTrajectoryWriter(output, buffer_size=scenario.output.get('buffer_size', 10000),
                                         pathway_path=pathways)
        elif pathways:
            logger.warning("Pathways are only written together with trajectories, ignoring {}", pathways)

        simulation = Simulation.from_scenario(scenario, writer=writer)
        simulation.init()
    except ConfigurationError as e:
        logger.error("Configuration error: {}", e)
        sys.exit(1)

    # Ctrl-C stops the run at the next frame and still writes the footer
    signal.signal(signal.SIGINT, lambda signum, frame: simulation.abort())

    try:
        simulated = simulation.run_standard_simulation()
    except ConfigurationError as e:
        logger.error("Configuration error: {}", e)
        sys.exit(1)

    logger.info("Simulation finished after {:.2f}s of simulated time", simulated)
    if output:
        logger.info("Trajectories written to {}", Path(output))
        if pathways:
            logger.info("Pathways written to {}", Path(pathways))


if __name__ == "__main__":
    main()
