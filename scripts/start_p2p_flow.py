"""Start and steer P2P flow workflows on Temporal.

Usage:
    python scripts/start_p2p_flow.py start --tenant t-1 --po po.json [--wait]
    python scripts/start_p2p_flow.py webhook p2p-PO-1001 goods_receipt_update --payload receipt.json
    python scripts/start_p2p_flow.py approve p2p-PO-1001 --by ana
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from workflows.p2p_workflow import P2PFlowWorkflow, P2PFlowWorkflowInput
from core.config import get_settings
from core.observability import configure_logging, get_logger

logger = get_logger(__name__)


def load_json(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    with open(path) as f:
        return json.load(f)


def workflow_id_for(po_data: Dict[str, Any]) -> str:
    po_number = po_data.get("po_number") or po_data.get("poNumber") or po_data.get("po_id") or po_data.get("poId")
    return f"p2p-{po_number}"


async def start_flow(tenant_id: str, po_path: str, connector: Optional[str], wait: bool) -> Dict[str, Any]:
    po_data = load_json(po_path)
    workflow_id = workflow_id_for(po_data)
    task_queue = get_settings().temporal_task_queue

    client = await get_temporal_client()
    logger.info(f"Starting P2PFlowWorkflow {workflow_id} on task queue '{task_queue}'")
    handle = await client.start_workflow(
        P2PFlowWorkflow.run,
        P2PFlowWorkflowInput(
            tenant_id=tenant_id,
            po_data=po_data,
            connector_context={"config_id": connector} if connector else None,
        ),
        id=workflow_id,
        task_queue=task_queue,
    )
    logger.info(f"Workflow started: {handle.id}")

    if not wait:
        return {"workflow_id": handle.id}
    result = await handle.result()
    return asdict(result)


async def send_webhook(workflow_id: str, webhook_type: str, payload_path: Optional[str]) -> Dict[str, Any]:
    client = await get_temporal_client()
    handle = client.get_workflow_handle(workflow_id)
    await handle.signal(P2PFlowWorkflow.webhook, args=[webhook_type, load_json(payload_path)])
    return {"workflow_id": workflow_id, "signal": "webhook", "type": webhook_type}


async def send_approval(workflow_id: str, approved_by: str, notes: Optional[str]) -> Dict[str, Any]:
    client = await get_temporal_client()
    handle = client.get_workflow_handle(workflow_id)
    await handle.signal(P2PFlowWorkflow.approve, args=[approved_by, notes])
    return {"workflow_id": workflow_id, "signal": "approve", "approved_by": approved_by}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start and steer P2P flow workflows")
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a workflow for a purchase order")
    start.add_argument("--tenant", required=True, help="Tenant id")
    start.add_argument("--po", required=True, help="Path to purchase order JSON")
    start.add_argument("--connector", help="Registered connector config id used by step handlers")
    start.add_argument("--wait", action="store_true", help="Wait for the workflow result")

    webhook = commands.add_parser("webhook", help="Signal an external update to a running workflow")
    webhook.add_argument("workflow_id")
    webhook.add_argument("webhook_type", help="e.g. goods_receipt_update, invoice_created")
    webhook.add_argument("--payload", help="Path to payload JSON")

    approve = commands.add_parser("approve", help="Approve a pending match discrepancy")
    approve.add_argument("workflow_id")
    approve.add_argument("--by", required=True, dest="approved_by")
    approve.add_argument("--notes")

    return parser


def main() -> int:
    configure_logging()
    args = build_parser().parse_args()

    if args.command == "start":
        coro = start_flow(args.tenant, args.po, args.connector, args.wait)
    elif args.command == "webhook":
        coro = send_webhook(args.workflow_id, args.webhook_type, args.payload)
    else:
        coro = send_approval(args.workflow_id, args.approved_by, args.notes)

    try:
        result = asyncio.run(coro)
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
