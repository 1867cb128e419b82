from azconverge.workloads.binding import (
    WORKLOAD_SET_TYPE,
    WorkloadBinding,
    aggregate_operation,
    with_namespace,
)

__all__ = ["WORKLOAD_SET_TYPE", "WorkloadBinding", "aggregate_operation", "with_namespace"]
