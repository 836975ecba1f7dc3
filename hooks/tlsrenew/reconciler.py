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

import time
from datetime import datetime
from typing import Callable, List, Optional

import tlsrenew.certificate.certificate as certificate
from tlsrenew.certificate.served import ServedCertificateProbe
from tlsrenew.certificate.source import CertificateSource
from tlsrenew.errors import ParseError, RenewalError, StaleCertificate, Timeout
from tlsrenew.kubernetes.access import ClusterAccessCheck
from tlsrenew.kubernetes.secret_store import SecretStore
from tlsrenew.kubernetes.workload import WorkloadReloader
from tlsrenew.lock import LocalLock, RunLock
from tlsrenew.models import (CertificateMaterial, Failed, RenewalOutcome, RenewalTarget, Renewed,
                             SecretRecord, SecretState, Skipped, Stage, StageTransition)

DEFAULT_ROLLOUT_TIMEOUT = 60.0


class Deadline:
    """Wall-clock budget of one run. None means unbounded."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(self.expires_at - self.clock(), 0.0)

    def cap(self, timeout: Optional[float]) -> Optional[float]:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def check(self, stage: Stage) -> None:
        if self.expires_at is not None and self.clock() >= self.expires_at:
            raise Timeout(f"run deadline exceeded during {stage.value}")


class Run:
    """State of a single reconciliation. Never shared between targets."""

    def __init__(self, target: RenewalTarget, now: Callable[[], datetime], log: Callable[[str], None]):
        self.target = target
        self.now = now
        self.log = log
        self.stage = Stage.IDLE
        self.transitions: List[StageTransition] = []
        self.secret_state = SecretState.UNCHANGED
        self.current: Optional[SecretRecord] = None
        self.material: Optional[CertificateMaterial] = None

    def enter(self, stage: Stage, detail: str = "") -> None:
        self.stage = stage
        self.transitions.append(StageTransition(stage=stage, at=self.now(), detail=detail))
        self.log(f"reconciler: {self.target}: {stage.value}" + (f" ({detail})" if detail else ""))

    def skipped(self, days_remaining: int) -> Skipped:
        self.enter(Stage.SKIP, f"{days_remaining} days remaining, window is {self.target.renewal_window_days}")
        return Skipped(target=self.target, transitions=tuple(self.transitions), days_remaining=days_remaining)

    def renewed(self, new_expiry: datetime, served_expiry: Optional[datetime] = None) -> Renewed:
        self.enter(Stage.DONE, f"new certificate expires {new_expiry.isoformat()}")
        return Renewed(target=self.target,
                       transitions=tuple(self.transitions),
                       new_expiry=new_expiry,
                       served_expiry=served_expiry)

    def failed(self, cause: RenewalError) -> Failed:
        stage = self.stage
        if cause.secret_removed:
            self.secret_state = SecretState.REMOVED
        detail = f"{stage.value}: {cause.kind}: {cause.message}"
        if self.secret_state == SecretState.REPLACED:
            detail += "; the secret already holds the new certificate, workload not verified"
        elif self.secret_state == SecretState.REMOVED:
            detail += "; the secret was deleted and not created again"
        else:
            detail += "; the secret was not changed"
        self.enter(Stage.FAILED, detail)
        return Failed(target=self.target,
                      transitions=tuple(self.transitions),
                      stage=stage,
                      cause=cause,
                      secret_state=self.secret_state)

    def wipe(self) -> None:
        for material in (self.material, self.current):
            if material is not None:
                material.wipe()
        self.material = None
        self.current = None


class RenewalReconciler:
    """
    Keeps the TLS secret of a target renewed:
    Idle -> Inspecting -> (Skip | Renewing -> Deploying -> Verifying -> Done), Failed from any stage.

    One invocation makes at most one issue attempt and one rollout; retrying is left to
    whatever schedules the invocations. Runs for the same (namespace, secret) are serialized
    through the lock, runs for different targets share nothing.
    """

    def __init__(self,
                 source: CertificateSource,
                 store: SecretStore,
                 reloader: WorkloadReloader,
                 lock: Optional[RunLock] = None,
                 access_check: Optional[ClusterAccessCheck] = None,
                 served_probe: Optional[ServedCertificateProbe] = None,
                 now: Callable[[], datetime] = certificate.utcnow,
                 clock: Callable[[], float] = time.monotonic,
                 log: Callable[[str], None] = print):
        self.source = source
        self.store = store
        self.reloader = reloader
        self.lock = lock if lock is not None else LocalLock()
        self.access_check = access_check
        self.served_probe = served_probe
        self.now = now
        self.clock = clock
        self.log = log

    def reconcile(self,
                  target: RenewalTarget,
                  rollout_timeout: Optional[float] = DEFAULT_ROLLOUT_TIMEOUT,
                  deadline: Optional[float] = None) -> RenewalOutcome:
        """
        Run one reconciliation of target.
        :param rollout_timeout: seconds to wait for the restarted deployment to become ready, None for the default.
        :param deadline: optional seconds budget for the whole run, lock wait included.
        :rtype: :py:class:`Skipped` | :py:class:`Renewed` | :py:class:`Failed`
        """
        if rollout_timeout is None:
            rollout_timeout = DEFAULT_ROLLOUT_TIMEOUT
        run = Run(target, self.now, self.log)
        budget = Deadline(deadline, self.clock)
        try:
            run.enter(Stage.INSPECTING)
            with self.lock.hold(target.lock_key, budget.remaining()):
                return self.run_stages(run, budget, rollout_timeout)
        except RenewalError as e:
            return run.failed(e)
        finally:
            run.wipe()

    def run_stages(self, run: Run, budget: Deadline, rollout_timeout: float) -> RenewalOutcome:
        target = run.target
        budget.check(run.stage)
        if self.access_check is not None:
            self.access_check.check(target, timeout=budget.remaining())
            budget.check(run.stage)
        run.current = self.store.get(target.namespace, target.secret_name, timeout=budget.remaining())
        old_expiry = self.current_expiry(run)
        if old_expiry is not None:
            days = certificate.days_remaining(old_expiry, self.now())
            if days > target.renewal_window_days:
                return run.skipped(days)
            reason = f"{days} days remaining, window is {target.renewal_window_days}"
        elif run.current is None:
            reason = "secret does not exist"
        else:
            reason = "current certificate is unreadable"

        run.enter(Stage.RENEWING, reason)
        budget.check(run.stage)
        run.material = self.source.issue(target.domain, target.validation_method, timeout=budget.remaining())

        run.enter(Stage.DEPLOYING)
        budget.check(run.stage)
        new_expiry = certificate.inspect(run.material.chain).not_after
        certificate.check_key_pair(run.material.chain, run.material.private_key)
        if old_expiry is not None and new_expiry <= old_expiry:
            raise StaleCertificate(f"issued certificate expires {new_expiry.isoformat()}, "
                                   f"not later than the deployed one ({old_expiry.isoformat()})")
        self.store.put(target.namespace, target.secret_name, run.material,
                       current=run.current, timeout=budget.remaining())
        run.secret_state = SecretState.REPLACED
        run.material.wipe()

        run.enter(Stage.VERIFYING, f"secret updated, new certificate expires {new_expiry.isoformat()}")
        budget.check(run.stage)
        handle = self.reloader.reload(target.namespace, target.deployment_name, timeout=budget.remaining())
        budget.check(run.stage)
        ready = self.reloader.await_ready(handle, budget.cap(rollout_timeout))
        self.log(f"reconciler: {target}: {ready.replicas_ready}/{ready.replicas_expected} replicas ready")
        return run.renewed(new_expiry, self.served_expiry(run, new_expiry, budget))

    def current_expiry(self, run: Run) -> Optional[datetime]:
        if run.current is None:
            return None
        try:
            return certificate.inspect(run.current.chain).not_after
        except ParseError as e:
            self.log(f"reconciler: {run.target}: certificate in the secret is invalid, renewing: {e}")
            return None

    def served_expiry(self, run: Run, new_expiry: datetime, budget: Deadline) -> Optional[datetime]:
        """
        Expiry of the certificate the domain serves after the rollout.
        Only reported: the secret and the workload are already updated at this point.
        """
        if self.served_probe is None:
            return None
        target = run.target
        try:
            served = self.served_probe.served_expiry(target.domain, timeout=budget.remaining())
        except RenewalError as e:
            self.log(f"reconciler: {target}: warning: could not verify the served certificate: {e.message}")
            return None
        if served != new_expiry:
            self.log(f"reconciler: {target}: warning: {target.domain} still serves a certificate expiring "
                     f"{served.isoformat()}, expected {new_expiry.isoformat()}")
        else:
            self.log(f"reconciler: {target}: {target.domain} serves the new certificate")
        return served
