"""Stack definition: the declared Azure resources, workloads and outputs.

Submodules:
    builder    -- build_stack(): StackConfig -> ResourceStore + StackOutputs.
    manifests  -- Built-in and file-loaded Kubernetes workload manifests.
    outputs    -- StackOutputs: exported values, with secret redaction.
"""

from azconverge.stack.builder import Stack, build_stack
from azconverge.stack.outputs import StackOutputs

__all__ = ["Stack", "StackOutputs", "build_stack"]
