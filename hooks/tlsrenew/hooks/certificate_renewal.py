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

from tlsrenew.config import Settings, settings_from_dict
from tlsrenew.errors import InvalidTarget
from tlsrenew.hooks.hook import Hook
from tlsrenew.kubernetes.api import kubernetes_reconciler, load_api_client
from tlsrenew.reconciler import RenewalReconciler


def incluster_reconciler(settings: Settings, lock: str) -> RenewalReconciler:
    return kubernetes_reconciler(load_api_client(), settings.certificate_source(), lock=lock,
                                 verify_served=settings.verify_served)


class RenewCertificatesHook(Hook):
    """
    Scheduled hook that keeps Let's Encrypt certificates of the configured targets renewed.

    Targets come from module values at `<module>.renewal` (same layout as the YAML config:
    `defaults`, `certbot`, `targets`). Outcomes of the last check land in
    `<module>.internal.renewal.outcomes`; a configuration error in `<module>.internal.renewal.error`.
    """
    SCHEDULE_RENEWAL_CHECK_NAME = "renewalCheck"

    def __init__(self,
                 module_name: str,
                 crontab: str = "0 0,12 * * *",
                 lock: str = "lease",
                 make_reconciler: Callable[[Settings, str], RenewalReconciler] = incluster_reconciler) -> None:
        super().__init__(module_name=module_name)
        self.crontab = crontab
        self.lock = lock
        self.make_reconciler = make_reconciler
        self.queue = f"/modules/{self.module_name}/renew-certs"
        self.settings_path = f"{self.module_name}.renewal"
        self.status_path = f"{self.module_name}.internal.renewal"
        """
        :param module_name: Module name as used in values, e.g. tlsRenewal
        :type module_name: :py:class:`str`

        :param crontab: Optional. When to check the certificates. Twice a day by default.
        :type crontab: :py:class:`str`

        :param lock: Optional. Run lock: lease (cluster wide), local or none.
        :type lock: :py:class:`str`

        :param make_reconciler: Optional. Builds the reconciler from the settings and the lock mode.
        :type make_reconciler: :py:class:`function`
        """

    def generate_config(self) -> dict:
        return {
            "configVersion": "v1",
            "onStartup": 10,
            "schedule": [
                {
                    "name": self.SCHEDULE_RENEWAL_CHECK_NAME,
                    "crontab": self.crontab,
                    "queue": self.queue,
                }
            ]
        }

    def reconcile(self) -> Callable[[hook.Context], None]:
        def r(ctx: hook.Context) -> None:
            data = self.get_value(self.settings_path, ctx.values)
            if not data or not data.get("targets"):
                print("No certificates configured for renewal.")
                return
            try:
                settings = settings_from_dict(data, origin=self.settings_path)
            except InvalidTarget as e:
                print(f"Invalid renewal configuration: {e.message}")
                self.set_value(self.status_path, ctx.values, {"error": e.message, "outcomes": []})
                return

            reconciler = self.make_reconciler(settings, self.lock)
            outcomes = []
            for target in settings.targets:
                print(f"Check certificate of {target.domain} in secret {target}.")
                outcome = reconciler.reconcile(target,
                                               rollout_timeout=settings.rollout_timeout,
                                               deadline=settings.deadline)
                outcomes.append(outcome.to_dict())
            self.set_value(self.status_path, ctx.values, {"error": None, "outcomes": outcomes})
        return r
