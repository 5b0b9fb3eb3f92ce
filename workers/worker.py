"""Worker for P2P flows.

Polls the P2P task queue and executes P2PFlowWorkflow and its activities.
The orchestrator state lives in this process, so one worker process owns
the flows it started.

Run with --queue <name> to override TEMPORAL_TASK_QUEUE.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from workflows.p2p_workflow import P2PFlowWorkflow
from activities.p2p_flow import (
    start_p2p_flow,
    get_p2p_flow_status,
    deliver_p2p_webhook,
    approve_p2p_match,
    get_p2p_service,
)
from core.config import get_settings
from core.observability import configure_logging, get_logger

logger = get_logger(__name__)

P2P_WORKFLOWS = [P2PFlowWorkflow]
P2P_ACTIVITIES = [
    start_p2p_flow,
    get_p2p_flow_status,
    deliver_p2p_webhook,
    approve_p2p_match,
]


async def run_worker(queue: Optional[str] = None):
    """Start a worker listening on the P2P task queue.

    Args:
        queue: Task queue to poll (defaults to TEMPORAL_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal fails
    """
    settings = get_settings()
    task_queue = queue or settings.temporal_task_queue
    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    # Build the shared service before the first activity runs
    get_p2p_service()

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=P2P_WORKFLOWS,
        activities=P2P_ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Workflows: {len(P2P_WORKFLOWS)}")
    logger.info(f"  - Activities: {len(P2P_ACTIVITIES)}")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="P2P Flow Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE or p2p-flows)"
    )
    args = parser.parse_args()

    configure_logging()
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
