# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# The desired-state specs, observed container state, reconciliation results
# and the error taxonomy shared by every other layer.
# -----------------------------------------------------------------------------

from .errors import DockyardError, ErrorKind, SpecValidationError, EngineError
from .models import (
    BuildSpec,
    ContainerSpec,
    ContainerState,
    ContainerStatus,
    EnvironmentSpec,
    MountSpec,
    OperationResult,
    Outcome,
    PortMapping,
    ReconcileReport,
    StatusSnapshot,
)

__all__ = [
    "DockyardError", "ErrorKind", "SpecValidationError", "EngineError",
    "BuildSpec", "ContainerSpec", "EnvironmentSpec", "MountSpec", "PortMapping",
    "ContainerState", "ContainerStatus",
    "OperationResult", "Outcome", "ReconcileReport", "StatusSnapshot",
]
