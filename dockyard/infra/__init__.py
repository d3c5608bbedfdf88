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
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - EngineClient: async Docker SDK wrapper with typed errors
# - create_build_context: streamed tar.gz build contexts
# -----------------------------------------------------------------------------

from .archive import BuildContext, create_build_context
from .docker_client import EngineClient, ExecSession

__all__ = ["BuildContext", "create_build_context", "EngineClient", "ExecSession"]
