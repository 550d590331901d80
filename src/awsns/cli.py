#!/usr/bin/env python3
"""awsns - Route 53 records for running EC2 instances

Creates/updates A and CNAME records in a Route 53 hosted zone for all running
non-spot EC2 instances, based on their "Name" tag. The record name is built by
concatenating the tag value with the configured suffix:

    Name tag "jenkins" + suffix ".foo.example.com" -> jenkins.foo.example.com

The hosted zone must be authoritative for the suffix (either example.com or
foo.example.com in the example above).

If an instance has a public DNS name a CNAME record pointing to it is created,
otherwise an A record pointing to its public IP address. Existing A/CNAME
records under the suffix that have no matching running instance are removed.

Invocation:

    Command line:
        awsns --suffix .foo.example.com --zone Z0123456789ABC

    AWS Lambda:
        Handler awsns.cli.lambda_handler, subscribed to the
        "EC2 Instance State-change Notification" event for the "running"
        state. The lambda needs permission to describe EC2 instances and to
        list/change Route 53 record sets (AmazonEC2ReadOnlyAccess,
        AmazonRoute53FullAccess, AWSLambdaBasicExecutionRole).

Environment variables:

    SUFFIX                 Domain suffix, must start with a dot
    ZONE                   Route 53 hosted zone id
    AWSNS_CONFIG_PATH      Optional YAML config file with the keys below
                           Example:
                             suffix: .foo.example.com
                             zone: Z0123456789ABC
                             dry_run: false
                             mode: watch
                             interval: 300
    AWSNS_DRY_RUN          Log the change batch without applying it
    SYNC_MODE              "once" or "watch" (polling loop) (default: once)
    POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 300)
    LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Command line flags take precedence over environment variables, which take
precedence over the config file.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import boto3
import yaml
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60
CHANGE_COMMENT = "automated update for running instances"
MANAGED_KINDS = ("A", "CNAME")

DEFAULT_MODE = "once"
DEFAULT_INTERVAL_SECONDS = 300
MIN_INTERVAL_SECONDS = 5
MIN_CLIENT_TIMEOUT_SECONDS = 1
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# =============================================================================
# Errors
# =============================================================================


class AwsnsError(Exception):
    """Base class for errors raised by awsns itself."""


class ConfigError(AwsnsError, ValueError):
    """Invalid configuration, raised before any provider call."""


class NoChangesError(AwsnsError):
    """No UPSERT could be computed.

    Raised instead of submitting a batch made of deletions only: an empty
    instance snapshot is more likely a provider hiccup than a real request to
    drop every managed record. The check cannot tell the two apart.
    """


class CancelledError(AwsnsError):
    """The invocation was cancelled or ran past its deadline."""


# =============================================================================
# Enums
# =============================================================================


class Lifecycle(Enum):
    """EC2 instance lifecycle class.

    STANDARD: on-demand/reserved instances, eligible for DNS records.

    EPHEMERAL: spot, scheduled and similar instances. Their addresses are not
               stable, so they never get records.
    """

    STANDARD = "standard"
    EPHEMERAL = "ephemeral"

    @classmethod
    def from_ec2(cls, value: Optional[str]) -> "Lifecycle":
        if not value or value == cls.STANDARD.value:
            return cls.STANDARD
        return cls.EPHEMERAL


class RecordKind(Enum):
    A = "A"
    CNAME = "CNAME"


class ChangeAction(Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class InstanceRecord:
    """The DNS-relevant parts of a running EC2 instance."""

    instance_id: str
    label: str = ""
    public_dns_name: str = ""
    public_ip: str = ""
    lifecycle: Lifecycle = Lifecycle.STANDARD


@dataclass(frozen=True)
class DNSRecord:
    """A Route 53 resource record set.

    `kind` holds the raw type string for record types awsns does not manage.
    `alias_target` is set for Route 53 alias records, which carry no TTL or
    values and must be deleted with the same AliasTarget. `set_identifier`
    is set for routing-policy sets (weighted, latency, failover, geo,
    multivalue); awsns never creates or deletes those.
    """

    name: str
    kind: Any
    ttl: Optional[int] = None
    values: Tuple[str, ...] = ()
    alias_target: Optional[Dict[str, Any]] = field(default=None, compare=False)
    set_identifier: str = ""

    @property
    def type_name(self) -> str:
        return self.kind.value if isinstance(self.kind, RecordKind) else str(self.kind)

    def to_route53(self) -> Dict[str, Any]:
        rrset: Dict[str, Any] = {"Name": self.name, "Type": self.type_name}
        if self.alias_target:
            rrset["AliasTarget"] = dict(self.alias_target)
            return rrset
        if self.ttl is not None:
            rrset["TTL"] = self.ttl
        rrset["ResourceRecords"] = [{"Value": v} for v in self.values]
        return rrset


@dataclass(frozen=True)
class Change:
    action: ChangeAction
    record: DNSRecord

    def to_route53(self) -> Dict[str, Any]:
        return {"Action": self.action.value, "ResourceRecordSet": self.record.to_route53()}

    def __str__(self) -> str:
        return f"{self.action.value} {self.record.name} {self.record.type_name} {', '.join(self.record.values)}"


@dataclass(frozen=True)
class Config:
    """Everything a reconciliation run needs besides the providers."""

    suffix: str
    zone_id: str
    dry_run: bool = False
    log_level: str = "INFO"
    mode: str = DEFAULT_MODE
    interval: int = DEFAULT_INTERVAL_SECONDS

    def validate(self) -> None:
        if self.suffix == "." or not self.suffix.startswith("."):
            raise ConfigError(
                f"invalid suffix {self.suffix!r}, must start with dot, like '.example.com'"
            )
        if not self.zone_id:
            raise ConfigError("hosted zone id cannot be empty")
        if self.mode not in ("once", "watch"):
            raise ConfigError(f"invalid mode {self.mode!r}, use 'once' or 'watch'")
        if self.interval <= 0:
            raise ConfigError(f"invalid interval {self.interval!r}, must be positive")


# =============================================================================
# Cancellation
# =============================================================================


@dataclass
class CancelToken:
    """Invocation-scoped cancellation signal.

    Providers call check() before every API request, so a cancelled run stops
    at the next request boundary. Nothing is written to the zone unless the
    token is still live when the batch is submitted.
    """

    deadline: Optional[float] = None
    _cancelled: bool = field(default=False, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled = True

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self._cancelled:
            raise CancelledError("invocation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CancelledError("invocation deadline exceeded")


def boto_config(cancel: CancelToken, *, max_attempts: Optional[int] = None) -> BotoConfig:
    """botocore client settings bounded by the token's deadline.

    check() only runs between requests, so a single hung request is cut
    short by the connect/read timeouts instead.
    """
    options: Dict[str, Any] = {}
    remaining = cancel.remaining()
    if remaining is not None:
        timeout = max(MIN_CLIENT_TIMEOUT_SECONDS, remaining)
        options["connect_timeout"] = timeout
        options["read_timeout"] = timeout
    if max_attempts is not None:
        options["retries"] = {"total_max_attempts": max_attempts}
    return BotoConfig(**options)


# =============================================================================
# Name Validation
# =============================================================================


def valid(label: str) -> bool:
    """Report whether label can be used as a host name component.

    Only ASCII letters, digits and hyphens are accepted. Length is left for
    Route 53 to enforce.
    """
    if not label:
        return False
    for ch in label:
        if "a" <= ch <= "z" or "A" <= ch <= "Z" or "0" <= ch <= "9" or ch == "-":
            continue
        return False
    return True


# =============================================================================
# Instance Directory Interface and Implementations
# =============================================================================


class InstanceDirectory(ABC):
    """Abstract base class for compute instance providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def running_instances(self, cancel: CancelToken) -> List[InstanceRecord]:
        """Get running, standard-lifecycle instances."""
        pass


def instance_from_ec2(raw: Mapping[str, Any]) -> InstanceRecord:
    """Build an InstanceRecord from a describe_instances entry.

    The first "Name" tag in API order wins. EC2 does not allow duplicate tag
    keys, so this only matters for hand-built input.
    """
    label = ""
    for tag in raw.get("Tags") or []:
        if tag.get("Key") == "Name":
            label = tag.get("Value") or ""
            break
    return InstanceRecord(
        instance_id=raw.get("InstanceId") or "",
        label=label,
        public_dns_name=raw.get("PublicDnsName") or "",
        public_ip=raw.get("PublicIpAddress") or "",
        lifecycle=Lifecycle.from_ec2(raw.get("InstanceLifecycle")),
    )


class EC2InstanceDirectory(InstanceDirectory):
    """EC2 implementation backed by a boto3 client."""

    def __init__(self, client: Any = None, client_config: Optional[BotoConfig] = None):
        self._client = client if client is not None else boto3.client("ec2", config=client_config)

    @property
    def name(self) -> str:
        return "EC2"

    def running_instances(self, cancel: CancelToken) -> List[InstanceRecord]:
        paginator = self._client.get_paginator("describe_instances")
        pages = paginator.paginate(
            Filters=[{"Name": "instance-state-name", "Values": ["running"]}]
        )

        instances: List[InstanceRecord] = []
        skipped = 0
        cancel.check()
        for page in pages:
            for reservation in page.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    inst = instance_from_ec2(raw)
                    if inst.lifecycle is not Lifecycle.STANDARD:
                        skipped += 1
                        logger.debug(
                            f"Skipping {inst.instance_id}: lifecycle {raw.get('InstanceLifecycle')}"
                        )
                        continue
                    instances.append(inst)
            cancel.check()

        logger.info(f"{self.name}: {len(instances)} running instances ({skipped} non-standard skipped)")
        return instances


# =============================================================================
# Zone Store Interface and Implementations
# =============================================================================


class ZoneStore(ABC):
    """Abstract base class for DNS zone providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str, cancel: CancelToken) -> List[DNSRecord]:
        """Get all records of the zone, every page."""
        pass

    @abstractmethod
    def apply_changes(
        self, zone_id: str, changes: List[Change], comment: str, cancel: CancelToken
    ) -> str:
        """Submit changes as one atomic batch, return the provider change id."""
        pass


def record_from_route53(raw: Mapping[str, Any]) -> DNSRecord:
    rtype = raw.get("Type") or ""
    kind: Any = RecordKind(rtype) if rtype in MANAGED_KINDS else rtype
    values = tuple(r["Value"] for r in raw.get("ResourceRecords") or [] if "Value" in r)
    return DNSRecord(
        name=raw.get("Name") or "",
        kind=kind,
        ttl=raw.get("TTL"),
        values=values,
        alias_target=raw.get("AliasTarget"),
        set_identifier=raw.get("SetIdentifier") or "",
    )


class Route53ZoneStore(ZoneStore):
    """Route 53 implementation backed by a boto3 client."""

    def __init__(self, client: Any = None, client_config: Optional[BotoConfig] = None):
        self._client = client if client is not None else boto3.client("route53", config=client_config)

    @property
    def name(self) -> str:
        return "Route 53"

    def list_records(self, zone_id: str, cancel: CancelToken) -> List[DNSRecord]:
        paginator = self._client.get_paginator("list_resource_record_sets")
        records: List[DNSRecord] = []
        cancel.check()
        for page in paginator.paginate(HostedZoneId=zone_id):
            records.extend(record_from_route53(rr) for rr in page.get("ResourceRecordSets", []))
            cancel.check()
        logger.info(f"{self.name}: {len(records)} records in zone {zone_id}")
        return records

    def apply_changes(
        self, zone_id: str, changes: List[Change], comment: str, cancel: CancelToken
    ) -> str:
        cancel.check()
        response = self._client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": comment,
                "Changes": [ch.to_route53() for ch in changes],
            },
        )
        return (response.get("ChangeInfo") or {}).get("Id", "")


# =============================================================================
# Reconciliation
# =============================================================================


def _name_key(name: str) -> str:
    return name.rstrip(".").lower()


def removal_candidates(records: List[DNSRecord], suffix: str) -> Dict[str, Change]:
    """Build DELETE changes for every managed record under suffix.

    Managed means a simple-routing A or CNAME record strictly below suffix;
    the zone apex, routing-policy sets and unrelated records are never
    returned. Keys are lower-cased names without the trailing dot. The delete
    carries the record's current TTL and values, which Route 53 requires to
    match.
    """
    fq_suffix = suffix.lower() + "."
    candidates: Dict[str, Change] = {}
    for rr in records:
        fq_name = rr.name.lower()
        if not fq_name or fq_name == fq_suffix or not fq_name.endswith(fq_suffix):
            continue
        if not isinstance(rr.kind, RecordKind):
            continue
        if rr.set_identifier:
            logger.debug(f"Skipping routing policy set {rr.name} ({rr.set_identifier})")
            continue
        name = rr.name[:-1] if rr.name.endswith(".") else rr.name
        candidates[_name_key(name)] = Change(
            action=ChangeAction.DELETE,
            record=DNSRecord(
                name=name, kind=rr.kind, ttl=rr.ttl, values=rr.values, alias_target=rr.alias_target
            ),
        )
    return candidates


def desired_record(inst: InstanceRecord, suffix: str) -> Optional[DNSRecord]:
    """Return the record inst should have, or None if it gets none."""
    if inst.lifecycle is not Lifecycle.STANDARD or not valid(inst.label):
        return None
    name = inst.label + suffix
    if inst.public_dns_name:
        return DNSRecord(name=name, kind=RecordKind.CNAME, ttl=DEFAULT_TTL, values=(inst.public_dns_name,))
    if inst.public_ip:
        return DNSRecord(name=name, kind=RecordKind.A, ttl=DEFAULT_TTL, values=(inst.public_ip,))
    return None


def reconcile(
    instances: List[InstanceRecord], suffix: str, candidates: Dict[str, Change]
) -> List[Change]:
    """Compute the change batch bringing the zone in line with instances.

    UPSERTs come first in instance order, followed by the remaining DELETEs
    sorted by name. An instance with a record always wins over a stale record
    of the same name. Two instances with the same label yield one UPSERT, the
    later instance's.

    Raises NoChangesError when no UPSERT could be built.
    """
    to_remove = dict(candidates)
    logger.info(f"Removal candidates: {len(to_remove)}")

    upserts: Dict[str, Change] = {}
    for inst in instances:
        record = desired_record(inst, suffix)
        if record is None:
            logger.debug(f"No record for {inst.instance_id} (label {inst.label!r})")
            continue
        key = _name_key(record.name)
        if key in upserts:
            logger.debug(f"{record.name} claimed again by {inst.instance_id}")
        upserts[key] = Change(action=ChangeAction.UPSERT, record=record)
        to_remove.pop(key, None)

    if not upserts:
        raise NoChangesError("no changes to apply")

    logger.info(f"Actually removing: {len(to_remove)}")
    deletes = []
    for key in sorted(to_remove):
        logger.info(f"Removing: {to_remove[key].record.name}")
        deletes.append(to_remove[key])
    return list(upserts.values()) + deletes


def apply_changes(
    zone_store: ZoneStore, zone_id: str, changes: List[Change], cancel: CancelToken
) -> str:
    """Submit changes as a single batch. Errors propagate, nothing is retried."""
    change_id = zone_store.apply_changes(zone_id, changes, CHANGE_COMMENT, cancel)
    logger.info(f"Submitted {len(changes)} changes to {zone_store.name} ({change_id})")
    return change_id


def run(
    config: Config,
    instance_directory: InstanceDirectory,
    zone_store: ZoneStore,
    invoker_id: str = "",
    cancel: Optional[CancelToken] = None,
) -> Optional[List[Change]]:
    """Reconcile the zone once.

    When invoker_id is set the run only proceeds if that instance is part of
    the running snapshot; otherwise it returns None without touching the zone.
    Returns the change batch (applied unless config.dry_run).
    """
    config.validate()
    cancel = cancel or CancelToken()

    instances = instance_directory.running_instances(cancel)
    if invoker_id and not any(i.instance_id == invoker_id for i in instances):
        # spot launch or instance already gone
        logger.info(f"Instance {invoker_id} not among running standard instances, nothing to do")
        return None

    records = zone_store.list_records(config.zone_id, cancel)
    changes = reconcile(instances, config.suffix, removal_candidates(records, config.suffix))

    if config.dry_run:
        for ch in changes:
            logger.info(f"[dry-run] {ch}")
        return changes

    apply_changes(zone_store, config.zone_id, changes, cancel)
    return changes


# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_interval(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid interval {value!r}, must be a number of seconds") from None


def load_config_file(path: str) -> Dict[str, Any]:
    """Read the YAML config file, an empty dict when path is unset."""
    if not path:
        return {}
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to load config from {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")
    return data


def load_config(
    args: Optional[argparse.Namespace] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Merge flags, environment and config file into a Config.

    The result is not validated; run() does that before any provider call.
    """
    env = os.environ if environ is None else environ
    args = args or argparse.Namespace()

    file_path = getattr(args, "config", None) or env.get("AWSNS_CONFIG_PATH", "")
    file_data = load_config_file(file_path)

    def pick(arg_name: str, env_name: str, file_key: str, default: Any) -> Any:
        value = getattr(args, arg_name, None)
        if value is not None:
            return value
        if env.get(env_name):
            return env[env_name]
        if file_data.get(file_key) is not None:
            return file_data[file_key]
        return default

    # store_true flags are False when absent, not None
    if getattr(args, "dry_run", False):
        dry_run = True
    else:
        dry_run = _parse_bool(env.get("AWSNS_DRY_RUN") or file_data.get("dry_run"))

    return Config(
        suffix=str(pick("suffix", "SUFFIX", "suffix", "")).strip(),
        zone_id=str(pick("zone", "ZONE", "zone", "")).strip(),
        dry_run=dry_run,
        log_level=str(pick("log_level", "LOG_LEVEL", "log_level", "INFO")).upper(),
        mode=str(pick("mode", "SYNC_MODE", "mode", DEFAULT_MODE)).lower().strip(),
        interval=_parse_interval(
            pick("interval", "POLL_INTERVAL_SECONDS", "interval", DEFAULT_INTERVAL_SECONDS)
        ),
    )


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# =============================================================================
# Lambda
# =============================================================================


def lambda_handler(event: Dict[str, Any], context: Any) -> None:
    """Entry point for "EC2 Instance State-change Notification" events.

    Events for other sources, other states or without an instance id are
    logged and ignored. Configuration is read like the command line's,
    without flags: SUFFIX, ZONE and friends, then AWSNS_CONFIG_PATH.
    """
    logging.getLogger().setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

    source = event.get("source")
    if source != "aws.ec2":
        logger.warning(f"Unsupported event source: {source!r}")
        return None

    detail = event.get("detail")
    if not isinstance(detail, dict):
        raise ValueError(f"malformed event detail: {detail!r}")
    state = detail.get("state")
    if state != "running":
        logger.info(f"Unsupported ec2 instance state: {state!r}")
        return None
    instance_id = detail.get("instance-id") or ""
    if not instance_id:
        logger.warning("Empty instance id")
        return None

    cancel = CancelToken()
    if context is not None and hasattr(context, "get_remaining_time_in_millis"):
        cancel = CancelToken.with_timeout(context.get_remaining_time_in_millis() / 1000.0)

    config = load_config(None, os.environ)
    run(
        config,
        EC2InstanceDirectory(client_config=boto_config(cancel)),
        Route53ZoneStore(client_config=boto_config(cancel, max_attempts=1)),
        invoker_id=instance_id,
        cancel=cancel,
    )
    return None


# =============================================================================
# Main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="awsns",
        description="Create/update Route 53 A/CNAME records for running EC2 instances.",
    )
    parser.add_argument("--suffix", help="dns zone suffix, i.e. .subdomain.example.com")
    parser.add_argument("--zone", help="Route 53 hosted zone id")
    parser.add_argument("--config", help="YAML config file (default: $AWSNS_CONFIG_PATH)")
    parser.add_argument(
        "--dry-run", action="store_true", help="log the change batch without applying it"
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (default: INFO)")
    parser.add_argument("--mode", choices=["once", "watch"], help="run once or poll (default: once)")
    parser.add_argument("--interval", type=int, help="poll interval in seconds for watch mode")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
        setup_logging(config.log_level)
        config.validate()
    except ConfigError as e:
        setup_logging("INFO")
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"awsns: zone {config.zone_id}, suffix {config.suffix}, mode {config.mode}")
    if config.dry_run:
        logger.info("Dry run: changes will be logged, not applied")

    instance_directory = EC2InstanceDirectory()
    # a change batch is submitted once, botocore must not retry it
    zone_store = Route53ZoneStore(client_config=boto_config(CancelToken(), max_attempts=1))

    try:
        if config.mode == "once":
            run(config, instance_directory, zone_store)
            return

        interval = max(MIN_INTERVAL_SECONDS, config.interval)
        logger.info(f"Poll interval: {interval}s")
        while True:
            try:
                run(config, instance_directory, zone_store)
            except (AwsnsError, BotoCoreError, ClientError) as e:
                logger.error(f"Sync failed: {e}")
            time.sleep(interval)

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except (AwsnsError, BotoCoreError, ClientError) as e:
        logger.error(f"{e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
