#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""One certificate issuance attempt, from key generation to install.

The attempt walks these states:

    INIT -> KEY_GENERATED -> ORDER_CREATED -> CHALLENGE_READY
         -> CHALLENGE_PUBLISHED -> VALIDATION_TRIGGERED -> POLLING
         -> ISSUED | FAILED

Every run creates a new order; nothing is resumed from an earlier failed
attempt. Once the challenge is published it is unpublished exactly once on
every way out of the attempt, including interruption.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import enum
import logging
import tempfile
import threading

import live_install
from autossl_errors import (AuthorityError, ConfigurationError, IssuanceError,
                            IssuanceFailed, IssuanceInterrupted, ValidationTimeout)
from csr_gen import Identity, KeyMaterial, KeySpec, generate
from http_challenge import ChallengePublisher, PublishedChallenge, check_reachable
from settings import IssuanceConfig
from zerossl_client import AuthorityClient, ChallengeToken, domains_csv

log = logging.getLogger(__name__)

ISSUED = "issued"
TERMINAL_FAILURE_STATUSES = frozenset({"cancelled", "revoked", "expired", "failed"})


class State(enum.Enum):
    INIT = "init"
    KEY_GENERATED = "key_generated"
    ORDER_CREATED = "order_created"
    CHALLENGE_READY = "challenge_ready"
    CHALLENGE_PUBLISHED = "challenge_published"
    VALIDATION_TRIGGERED = "validation_triggered"
    POLLING = "polling"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass
class AttemptContext:
    identity: Identity
    key_spec: KeySpec
    workdir: str
    state: State = State.INIT
    history: List[State] = field(default_factory=lambda: [State.INIT])
    key: Optional[KeyMaterial] = None
    csr_pem: Optional[bytes] = None
    order_id: Optional[str] = None
    token: Optional[ChallengeToken] = None
    published: Optional[PublishedChallenge] = None
    last_status: Optional[str] = None
    polls: int = 0

    def advance(self, state: State) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class IssuanceResult:
    identity: Identity
    order_id: str
    paths: Dict[str, str]


class Orchestrator:
    def __init__(self, config: IssuanceConfig,
                 client: Optional[AuthorityClient] = None,
                 publisher: Optional[ChallengePublisher] = None,
                 installer: Callable = live_install.install,
                 cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.client = client or AuthorityClient(config.access_key, config.api_base)
        self.publisher = publisher or ChallengePublisher(port=config.http_port)
        self.installer = installer
        self.cancel_event = cancel_event or threading.Event()
        self.context: Optional[AttemptContext] = None

    def run(self) -> IssuanceResult:
        self.config.validate()
        identity = self.config.target()
        key_spec = self.config.key_spec()
        with tempfile.TemporaryDirectory(prefix=f"autossl-{identity.kind}-") as workdir:
            ctx = self.context = AttemptContext(identity, key_spec, workdir)
            try:
                return self._run(ctx)
            except IssuanceError as e:
                ctx.advance(State.FAILED)
                if e.payload is None and not isinstance(e, ConfigurationError):
                    e.payload = self.client.last_body
                log.error("Issuance for %s failed in state %s: %s", identity.value, ctx.history[-2].value, e)
                raise
            except BaseException:
                ctx.advance(State.FAILED)
                raise

    def _run(self, ctx: AttemptContext) -> IssuanceResult:
        log.info("1/7 Generating %s key and CSR (SAN=%s:%s)", ctx.key_spec,
                 "IP" if ctx.identity.kind == "ip" else "DNS", ctx.identity.value)
        ctx.key, ctx.csr_pem = generate(ctx.identity, ctx.key_spec, ctx.workdir)
        ctx.advance(State.KEY_GENERATED)

        log.info("2/7 Creating certificate order")
        ctx.order_id = self.client.create_order(ctx.csr_pem, domains_csv([ctx.identity.value]),
                                                self.config.validity_days)
        ctx.advance(State.ORDER_CREATED)

        log.info("3/7 Fetching HTTP file validation info")
        ctx.token = self._fetch_token(ctx)
        ctx.advance(State.CHALLENGE_READY)
        log.info("Validation URL: %s", ctx.token.verification_url or "(not provided)")

        log.info("4/7 Publishing validation file %s", ctx.token.relative_path)
        ctx.published = self.publisher.publish(ctx.token, self.config.webroot, ctx.workdir)
        try:
            ctx.advance(State.CHALLENGE_PUBLISHED)
            if self.config.self_check:
                check_reachable(ctx.token)
            log.info("5/7 Triggering validation and polling status")
            self._trigger(ctx)
            ctx.advance(State.VALIDATION_TRIGGERED)
            ctx.advance(State.POLLING)
            self._poll(ctx)
        finally:
            self.publisher.unpublish(ctx.published)
        ctx.advance(State.ISSUED)

        log.info("6/7 Downloading and installing certificate")
        bundle = self.client.download_bundle(ctx.order_id)
        bundle.private_key = ctx.key.private_key_pem
        paths = self.installer(bundle, self.config.live_dir)

        log.info("7/7 Done")
        return IssuanceResult(identity=ctx.identity, order_id=ctx.order_id, paths=paths)

    def _wait(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise IssuanceInterrupted("issuance interrupted")

    def _fetch_token(self, ctx: AttemptContext) -> ChallengeToken:
        attempts = self.config.token_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self.client.fetch_validation_token(ctx.order_id, ctx.identity.value)
            except AuthorityError as e:
                if attempt == attempts:
                    raise
                log.warning("Validation info not ready (%s), retry %d/%d", e, attempt, attempts - 1)
                self._wait(self.config.token_retry_delay)

    def _trigger(self, ctx: AttemptContext) -> None:
        try:
            acked = self.client.trigger_challenge(ctx.order_id)
        except AuthorityError as e:
            log.warning("Validation trigger failed (%s); polling anyway", e)
            return
        if not acked:
            log.warning("Validation trigger was not acknowledged; polling anyway: %s", self.client.last_body)

    def _poll(self, ctx: AttemptContext) -> None:
        attempts = self.config.poll_attempts
        for attempt in range(1, attempts + 1):
            ctx.polls = attempt
            try:
                status = self.client.poll_status(ctx.order_id)
            except AuthorityError as e:
                log.warning("Status request failed: %s", e)
                status = None
            ctx.last_status = status or "unknown"
            log.info("Status %d/%d: %s", attempt, attempts, ctx.last_status)
            if status == ISSUED:
                return
            if status in TERMINAL_FAILURE_STATUSES:
                raise IssuanceFailed(status, self.client.last_body)
            if attempt < attempts:
                self._wait(self.config.poll_interval)
        raise ValidationTimeout(
            f"order {ctx.order_id} not issued after {attempts} checks (last status: {ctx.last_status}); "
            f"check port 80, firewall and that {ctx.token.verification_url or ctx.identity.value} is reachable",
            self.client.last_body)
