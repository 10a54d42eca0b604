#!/usr/bin/env python3
# ========================
# main.py
# ========================

"""
Main Entry Point for the Layered Trade Pipeline

Generates sample trade and client sources, runs the raw -> cleaned -> summary
pipeline once and prints the resulting client investment summary.
"""

import sys
import logging
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from src.pipeline import ClientInvestmentQuery, PipelineDefinition, PipelineOrchestrator, RunState
from src.utils import Config, setup_logging, DataGenerator


def main():
    """Main execution function."""
    config = Config()

    setup_logging(
        log_level=config.LOG_LEVEL,
        log_file="pipeline.log",
        log_dir=config.LOG_DIR
    )

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("LAYERED TRADE PIPELINE - MAIN EXECUTION")
    logger.info("=" * 60)

    invalid = [name for name, ok in config.validate_config().items() if not ok]
    if invalid:
        logger.error(f"Invalid configuration settings: {invalid}")
        return 1

    config.ensure_directories()

    # Step 1: Generate sample sources
    logger.info("Step 1: Generating sample data...")
    generator = DataGenerator(seed=42)  # Reproducible data
    generation_stats = generator.generate_dataset(
        trades_path=config.TRADES_SOURCE,
        clients_path=config.CLIENTS_SOURCE,
        num_trades=config.SAMPLE_TRADES,
        num_clients=config.SAMPLE_CLIENTS,
        error_rate=0.1
    )

    # Step 2: Run the pipeline once
    logger.info("Step 2: Running data pipeline...")
    orchestrator = PipelineOrchestrator(PipelineDefinition.from_config(config), config)
    try:
        run = orchestrator.run_now()
    finally:
        orchestrator.shutdown()

    if run.state != RunState.SUCCEEDED:
        logger.error(f"Pipeline failed in stage '{run.failed_stage}': {run.error_kind}: {run.error_message}")
        return 1

    # Step 3: Print summary
    query = ClientInvestmentQuery(orchestrator.store)
    _print_execution_summary(run.results, generation_stats, query.query_client_investments())

    logger.info("Pipeline execution completed successfully!")
    return 0


def _print_execution_summary(results: dict, generation_stats: dict, summary_rows: list) -> None:
    """Print final execution summary."""
    print("\n" + "=" * 70)
    print("PIPELINE EXECUTION SUMMARY")
    print("=" * 70)

    print("Data Generation:")
    print(f"   - Trades generated: {generation_stats['total_rows']:,}")
    print(f"   - Clients generated: {generation_stats['total_clients']:,}")
    print(f"   - Errors injected: {generation_stats['records_with_errors']:,}")

    trades_ingest = results['ingest']['trades']
    cleaning = results['clean']
    aggregation = results['aggregate']

    print("\nRaw Layer:")
    print(f"   - Trade rows read: {trades_ingest['rows_read']:,}")
    print(f"   - Trade rows rejected: {trades_ingest['rows_rejected']:,}")

    print("\nCleaned Layer:")
    print(f"   - Trades kept: {cleaning['records_cleaned']:,} ({cleaning['success_rate']:.1f}%)")
    print(f"   - Dropped for missing fields: {cleaning['dropped_missing_fields']:,}")
    print(f"   - Dropped for unknown client: {cleaning['dropped_unknown_client']:,}")

    print("\nSummary Layer:")
    print(f"   - Clients: {aggregation['clients']:,}")
    print(f"   - Total investment: {aggregation['grand_total']}")

    print("\nTop clients by investment:")
    top = sorted(summary_rows, key=lambda r: r['total_investment'], reverse=True)[:5]
    for row in top:
        print(f"   - {row['client_id']} {row['client_name']} ({row['region']}): {row['total_investment']:,.2f}")

    print("=" * 70)


if __name__ == '__main__':
    exit_code = main()
    sys.exit(exit_code)
