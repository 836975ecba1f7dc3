#
# Copyright 2025 Flant JSC
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

from deckhouse import hook
from typing import Callable
import yaml

from tlsrenew.module import values as module_values


class Hook:
    """
    Base for Deckhouse hooks: generate_config() gives the binding configuration,
    reconcile() the function run for every binding context.
    """

    def __init__(self, module_name: str) -> None:
        self.module_name = module_name

    def generate_config(self) -> dict:
        raise NotImplementedError

    def reconcile(self) -> Callable[[hook.Context], None]:
        raise NotImplementedError

    def get_value(self, path: str, values: dict, default=None):
        return module_values.get_value(path, values, default)

    def set_value(self, path: str, values: dict, value) -> None:
        module_values.set_value(path, values, value)

    def run(self) -> None:
        hook.run(self.reconcile(), config=yaml.dump(self.generate_config()))
