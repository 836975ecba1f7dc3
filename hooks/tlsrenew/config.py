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

import os
import re
from typing import List, Mapping, Optional

import yaml

from tlsrenew.certificate.source import CertbotSource
from tlsrenew.errors import InvalidTarget
from tlsrenew.models import PLACEHOLDER_DOMAIN, RenewalTarget

DEFAULT_NAMESPACE = "letsencrypt-demo"
DEFAULT_SECRET_NAME = "todo-letsencrypt-secret"
DEFAULT_DEPLOYMENT = "todo-angular"
DEFAULT_ROLLOUT_TIMEOUT = "60s"
DEFAULT_RENEWAL_WINDOW_DAYS = 30
DEFAULT_VALIDATION_METHOD = "http"

DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}
TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")

TARGET_KEYS = {
    "domain": "domain",
    "namespace": "namespace",
    "secretName": "secret_name",
    "deploymentName": "deployment_name",
    "renewalWindowDays": "renewal_window_days",
    "validationMethod": "validation_method",
}


def parse_duration(value) -> Optional[float]:
    """
    Seconds from 60, "60", "60s", "5m" or "1h". None and "" stay None.
    :raises InvalidTarget: on anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        m = DURATION_RE.match(str(value))
        if not m:
            raise InvalidTarget(f"invalid duration {value!r}, expected e.g. 60s, 5m or 1h")
        seconds = float(m.group(1)) * DURATION_UNITS[m.group(2)]
    if seconds < 0:
        raise InvalidTarget(f"duration must not be negative, got {value!r}")
    return seconds


def parse_rollout_timeout(value) -> float:
    """Like parse_duration, but an empty or missing value means the default of 60s."""
    seconds = parse_duration(value)
    return parse_duration(DEFAULT_ROLLOUT_TIMEOUT) if seconds is None else seconds


def parse_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise InvalidTarget(f"invalid boolean {value!r}, expected true or false")


def target_from_dict(item: Mapping, defaults: Optional[Mapping] = None) -> RenewalTarget:
    merged = dict(defaults or {})
    merged.update(item or {})
    unknown = set(merged) - set(TARGET_KEYS)
    if unknown:
        raise InvalidTarget(f"unknown target keys: {', '.join(sorted(unknown))}")
    kwargs = {TARGET_KEYS[k]: v for k, v in merged.items() if k in TARGET_KEYS}
    for required in ("domain", "namespace", "secret_name", "deployment_name"):
        if not kwargs.get(required):
            raise InvalidTarget(f"target {item!r} misses {required}")
    return RenewalTarget.create(**kwargs)


def targets_from_list(items, defaults: Optional[Mapping] = None) -> List[RenewalTarget]:
    targets = [target_from_dict(item, defaults) for item in items or []]
    seen = set()
    for target in targets:
        if target.lock_key in seen:
            raise InvalidTarget(f"secret {target} is listed more than once")
        seen.add(target.lock_key)
    return targets


class Settings:
    """
    Everything a renewal invocation needs: the targets plus run and certbot options.

    :param targets: Targets to reconcile.
    :type targets: :py:class:`list[RenewalTarget]`

    :param rollout_timeout: Seconds to wait for the restarted deployment.
    :type rollout_timeout: :py:class:`float`

    :param deadline: Optional seconds budget for each run.
    :type deadline: :py:class:`float`

    :param certbot: Keyword arguments for CertbotSource.
    :type certbot: :py:class:`dict`

    :param verify_served: Check the certificate served on the domain after the rollout.
    :type verify_served: :py:class:`bool`
    """

    def __init__(self,
                 targets: List[RenewalTarget],
                 rollout_timeout: float = 60.0,
                 deadline: Optional[float] = None,
                 certbot: Optional[dict] = None,
                 verify_served: bool = True):
        self.targets = targets
        self.rollout_timeout = rollout_timeout
        self.deadline = deadline
        self.certbot = certbot or {}
        self.verify_served = verify_served

    def certificate_source(self) -> CertbotSource:
        return CertbotSource(**self.certbot)


def certbot_from_dict(data: Mapping) -> dict:
    keys = {
        "certbot": "certbot",
        "configDir": "config_dir",
        "email": "email",
        "server": "server",
        "authenticator": "authenticator",
        "extraArgs": "extra_args",
        "sudo": "sudo",
    }
    unknown = set(data or {}) - set(keys)
    if unknown:
        raise InvalidTarget(f"unknown certbot keys: {', '.join(sorted(unknown))}")
    res = {keys[k]: v for k, v in (data or {}).items() if v is not None}
    if "sudo" in res:
        res["sudo"] = parse_bool(res["sudo"], False)
    if res.get("sudo") and not res.get("config_dir"):
        # certbot running as root leaves root-owned keys behind in a throwaway directory.
        raise InvalidTarget("certbot sudo requires configDir (CERTBOT_CONFIG_DIR)")
    return res


def settings_from_dict(data: Mapping, origin: str = "configuration") -> Settings:
    """
    Settings from the layout shared by the YAML file and module values:
    optional `defaults`, optional `certbot` and a `targets` list.
    """
    if not isinstance(data, Mapping):
        raise InvalidTarget(f"{origin}: expected a mapping at the top level")
    defaults = dict(data.get("defaults") or {})
    rollout_timeout = parse_rollout_timeout(defaults.pop("rolloutTimeout", None))
    deadline = parse_duration(defaults.pop("deadline", None))
    verify_served = parse_bool(defaults.pop("verifyServed", None), True)
    targets = targets_from_list(data.get("targets"), defaults)
    if not targets:
        raise InvalidTarget(f"{origin}: no targets configured")
    return Settings(targets=targets,
                    rollout_timeout=rollout_timeout,
                    deadline=deadline,
                    certbot=certbot_from_dict(data.get("certbot")),
                    verify_served=verify_served)


def load_file(path: str) -> Settings:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return settings_from_dict(data, origin=path)


def load_env(environ: Mapping) -> Settings:
    """Single target from the environment, with the defaults of the renewal script."""
    target = target_from_dict({
        "domain": environ.get("DOMAIN", PLACEHOLDER_DOMAIN),
        "namespace": environ.get("NAMESPACE", DEFAULT_NAMESPACE),
        "secretName": environ.get("SECRET_NAME", DEFAULT_SECRET_NAME),
        "deploymentName": environ.get("DEPLOYMENT", DEFAULT_DEPLOYMENT),
        "renewalWindowDays": environ.get("RENEWAL_WINDOW_DAYS", DEFAULT_RENEWAL_WINDOW_DAYS),
        "validationMethod": environ.get("VALIDATION_METHOD", DEFAULT_VALIDATION_METHOD),
    })
    certbot = certbot_from_dict({
        "certbot": environ.get("CERTBOT"),
        "configDir": environ.get("CERTBOT_CONFIG_DIR"),
        "email": environ.get("CERTBOT_EMAIL"),
        "server": environ.get("CERTBOT_SERVER"),
        "authenticator": environ.get("CERTBOT_AUTHENTICATOR"),
        "extraArgs": environ.get("CERTBOT_EXTRA_ARGS", "").split() or None,
        "sudo": parse_bool(environ.get("CERTBOT_SUDO"), False) or None,
    })
    return Settings(targets=[target],
                    rollout_timeout=parse_rollout_timeout(environ.get("TIMEOUT")),
                    deadline=parse_duration(environ.get("RUN_DEADLINE")),
                    certbot=certbot,
                    verify_served=parse_bool(environ.get("VERIFY_SERVED"), True))


def load_settings(path: Optional[str] = None, environ: Optional[Mapping] = None) -> Settings:
    """
    Settings from a YAML file when path is given, otherwise from the environment.
    :raises InvalidTarget: on any malformed value, before anything runs.
    """
    if path:
        return load_file(path)
    return load_env(os.environ if environ is None else environ)
