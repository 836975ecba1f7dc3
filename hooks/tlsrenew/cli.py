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

import argparse
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Mapping, Optional

import yaml

from tlsrenew.config import Settings, load_settings, parse_duration, parse_rollout_timeout
from tlsrenew.errors import InvalidTarget, RateLimited
from tlsrenew.kubernetes.api import LOCK_MODES, kubernetes_reconciler, load_api_client
from tlsrenew.models import Failed, RenewalOutcome
from tlsrenew.reconciler import RenewalReconciler

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

# Flags that override the environment variables of a single target.
ENV_FLAGS = {
    "domain": "DOMAIN",
    "namespace": "NAMESPACE",
    "secret_name": "SECRET_NAME",
    "deployment": "DEPLOYMENT",
    "renewal_window_days": "RENEWAL_WINDOW_DAYS",
    "validation_method": "VALIDATION_METHOD",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        "tlsrenew",
        description="Renew a Let's Encrypt certificate, update the TLS secret and restart the deployment mounting it.")
    parser.add_argument("-c", "--config", help="YAML file with defaults, certbot options and a list of targets")
    parser.add_argument("--domain", help="Domain of the certificate (env DOMAIN)")
    parser.add_argument("--namespace", help="Namespace of the secret and deployment (env NAMESPACE)")
    parser.add_argument("--secret-name", help="TLS secret name (env SECRET_NAME)")
    parser.add_argument("--deployment", help="Deployment mounting the secret (env DEPLOYMENT)")
    parser.add_argument("--renewal-window-days", type=int,
                        help="Renew when fewer days than this remain (env RENEWAL_WINDOW_DAYS, default 30)")
    parser.add_argument("--validation-method", choices=["dns", "http"],
                        help="How the authority validates the domain (env VALIDATION_METHOD, default http)")
    parser.add_argument("--timeout", help="Rollout timeout, e.g. 60s or 5m (env TIMEOUT, default 60s)")
    parser.add_argument("--deadline", help="Budget for a whole run, e.g. 10m (env RUN_DEADLINE)")
    parser.add_argument("--no-verify-served", dest="verify_served", action="store_false", default=None,
                        help="Skip checking the certificate served on the domain after the rollout (env VERIFY_SERVED)")
    parser.add_argument("--lock", choices=LOCK_MODES, default="lease",
                        help="Serialize runs per secret in this process (local) or cluster wide (lease)")
    parser.add_argument("--parallel", type=int, default=1, help="Targets reconciled at the same time")
    parser.add_argument("--kubeconfig", help="Kubeconfig file; in-cluster credentials are used when omitted")
    parser.add_argument("--context", help="Kubeconfig context")
    parser.add_argument("-o", "--output", choices=["text", "yaml"], default="text")
    return parser


def settings_from_args(args: argparse.Namespace, environ: Mapping) -> Settings:
    if args.config:
        settings = load_settings(path=args.config)
    else:
        env = dict(environ)
        for attr, name in ENV_FLAGS.items():
            value = getattr(args, attr)
            if value is not None:
                env[name] = str(value)
        settings = load_settings(environ=env)
    if args.timeout is not None:
        settings.rollout_timeout = parse_rollout_timeout(args.timeout)
    if args.deadline is not None:
        settings.deadline = parse_duration(args.deadline)
    if args.verify_served is not None:
        settings.verify_served = args.verify_served
    return settings


def default_reconciler(settings: Settings, args: argparse.Namespace) -> RenewalReconciler:
    api_client = load_api_client(kubeconfig=args.kubeconfig, context=args.context)
    return kubernetes_reconciler(api_client, settings.certificate_source(), lock=args.lock,
                                 verify_served=settings.verify_served)


def run_all(reconciler: RenewalReconciler, settings: Settings, parallel: int = 1) -> List[RenewalOutcome]:
    def one(target):
        return reconciler.reconcile(target, rollout_timeout=settings.rollout_timeout, deadline=settings.deadline)

    if parallel <= 1 or len(settings.targets) == 1:
        return [one(target) for target in settings.targets]
    with ThreadPoolExecutor(max_workers=parallel) as pool:
        return list(pool.map(one, settings.targets))


def describe(outcome: RenewalOutcome) -> str:
    if isinstance(outcome, Failed):
        res = f"✗ {outcome.target}: failed during {outcome.stage.value}: {outcome.cause.kind}: {outcome.cause.message}"
        if outcome.secret_updated:
            res += f" (secret state: {outcome.secret_state.value}, check the workload and roll back manually if needed)"
        else:
            res += " (secret not changed)"
        if isinstance(outcome.cause, RateLimited):
            res += "; rate limited by the authority, back off before the next attempt"
        return res
    data = outcome.to_dict()
    if "daysRemaining" in data:
        return f"✓ {outcome.target}: certificate valid for {data['daysRemaining']} more days, nothing to do"
    return f"✓ {outcome.target}: certificate renewed, expires {data['newExpiry']}"


def main(argv: Optional[List[str]] = None,
         environ: Optional[Mapping] = None,
         make_reconciler: Callable[[Settings, argparse.Namespace], RenewalReconciler] = default_reconciler) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args, os.environ if environ is None else environ)
    except InvalidTarget as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return EXIT_INVALID

    print("=== Let's Encrypt Certificate Renewal ===")
    for target in settings.targets:
        print(f"Domain: {target.domain} Namespace: {target.namespace} Secret: {target.secret_name} "
              f"Deployment: {target.deployment_name}")

    outcomes = run_all(make_reconciler(settings, args), settings, args.parallel)
    if args.output == "yaml":
        print(yaml.safe_dump([o.to_dict() for o in outcomes], sort_keys=False))
    else:
        for outcome in outcomes:
            print(describe(outcome))
    return EXIT_OK if all(o.ok for o in outcomes) else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
