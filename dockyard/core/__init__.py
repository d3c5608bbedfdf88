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
# CORE LAYER
# -----------------------------------------------------------------------------
# The orchestration logic:
# - translate: spec -> container configuration, with host-side validation
# - Reconciler: lifecycle state machine and drift detection
# - StreamReporter: incremental rendering of build/log/exec output
# -----------------------------------------------------------------------------

from .reconciler import DriftDecision, LockRegistry, Reconciler, detect_drift
from .reporter import StreamReporter
from .translator import translate

__all__ = [
    "DriftDecision", "LockRegistry", "Reconciler", "detect_drift",
    "StreamReporter",
    "translate",
]
