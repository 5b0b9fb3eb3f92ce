"""Workflow definitions module."""

from workflows.p2p_workflow import P2PFlowWorkflow, P2PFlowWorkflowInput, P2PFlowWorkflowOutput

__all__ = ["P2PFlowWorkflow", "P2PFlowWorkflowInput", "P2PFlowWorkflowOutput"]
