"""
Semantic type aliases for faultline.

These aliases keep signatures self-documenting: a ``NodeId`` is not just any
string and a ``DurationSeconds`` is not just any float.
"""

from collections.abc import Mapping
from typing import Any

# Time types
type Timestamp = float
type DurationSeconds = float

# Identity types
type NodeId = str
type NodeOrdinal = int
type DatabaseName = str
type TypeName = str
type RecordKey = str
type RuleName = str
type ChainName = str

# Network types
type HostAddress = str
type PortNumber = int
type Endpoint = tuple[HostAddress, PortNumber]
type RelayKey = tuple[str, NodeId]

# Workload types
type IterationCount = int
type RetryCount = int
type ConflictCount = int
type RecordCount = int

# Statement types
type StatementText = str
type StatementParams = Mapping[str, Any]
type RecordFields = dict[str, Any]
