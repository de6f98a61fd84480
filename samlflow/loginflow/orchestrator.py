"""
Login flow orchestration.

AuthOrchestrator.do_auth() runs once, early, for every request:

1. exclusion rules
2. loading (or creating) the login state of the tracked session
3. forced logoff requested by external tooling
4. logout
5. domain auto-match of the regular login form
6. provider selection and the redirect to the IdP

handle_response() is the return leg, called from the Assertion Consumer
Service with the posted SAMLResponse. It only accepts a response while the
session is waiting for one (phase SAML_REDIRECTED); everything else is
treated as a replay.

Failures are raised as LoginFlowError subclasses. Rendering the generic
error page and writing the operator log is the HTTP layer's job.
"""

import dataclasses
import logging
import re
from typing import Dict, Optional, Tuple

from samlflow.auth.sso.saml_service import SAMLProtocol
from samlflow.errors import (
    ProviderInitFailure,
    ReplayOrPhaseMismatchFailure,
    StateWriteFailure,
    PhaseTransitionError,
)
from samlflow.exclusions import ExclusionAction, ExclusionRule, ExclusionRules
from samlflow.identity.claims import ClaimResolver
from samlflow.identity.users import ClaimRuleEngine, UserDirectory
from samlflow.loginflow.decisions import AuthAction, AuthDecision
from samlflow.loginflow.host import HostSessionAdapter
from samlflow.providers.registry import ProviderRegistry
from samlflow.state.context import CookieJar, RequestContext
from samlflow.state.phase import PhaseStateMachine
from samlflow.state.store import LoginStateStore
from samlflow.state.tracker import SessionIdentityTracker
from samlflow.types.login_state import (
    MAX_PROVIDER_ID,
    PROVIDER_FIELD_LIMIT,
    LoginStateRecord,
    Phase,
)
from samlflow.utils.logging import get_security_logger, set_request_context

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

# Form field carrying the selected provider id (login buttons post it)
PROVIDER_FIELD = "samlIdpId"
# Login form fields whose name contains this hold the user name / e-mail
LOGIN_FIELD_MARKER = "fielda"

_SELECTION_RE = re.compile(r"^\d{1,3}$", re.ASCII)


def parse_provider_selection(raw: Optional[str]) -> Optional[int]:
    """
    Provider id from the selection field, or None when absent or unusable.

    Only plain decimal values below 1000 are considered, and of those only
    ids a provider can actually have.
    """
    if raw is None:
        return None
    value = str(raw).strip()
    if not _SELECTION_RE.match(value):
        return None
    idp_id = int(value)
    if idp_id >= PROVIDER_FIELD_LIMIT or not 1 <= idp_id <= MAX_PROVIDER_ID:
        return None
    return idp_id


class AuthOrchestrator:
    """Per-request decision flow of the SSO login."""

    def __init__(
        self,
        store: LoginStateStore,
        tracker: SessionIdentityTracker,
        phases: PhaseStateMachine,
        resolver: ClaimResolver,
        providers: ProviderRegistry,
        exclusions: ExclusionRules,
        protocol: SAMLProtocol,
        users: UserDirectory,
        host: HostSessionAdapter,
        rule_engine: Optional[ClaimRuleEngine] = None,
        logout_path: str = "/logout",
        root_url: str = "/",
        persist_excluded: bool = False,
    ):
        self.store = store
        self.tracker = tracker
        self.phases = phases
        self.resolver = resolver
        self.providers = providers
        self.exclusions = exclusions
        self.protocol = protocol
        self.users = users
        self.host = host
        self.rule_engine = rule_engine or ClaimRuleEngine()
        self.logout_path = logout_path.rstrip("/") or "/"
        self.root_url = root_url
        self.persist_excluded = persist_excluded

    # =========================================================================
    # Forward leg
    # =========================================================================

    async def do_auth(self, ctx: RequestContext, jar: CookieJar) -> AuthDecision:
        """
        Decide what to do with a request.

        Raises:
            LoginFlowError: When the flow cannot continue safely.
        """
        rule = self.exclusions.match(ctx.path)
        if rule is not None:
            return await self._excluded(ctx, jar, rule)

        record = await self.load_state(ctx, jar)

        if record.enforce_logoff:
            return await self._force_logoff(ctx, jar, record)

        if self._is_logout(ctx.path):
            return await self._logout(ctx, jar, record)

        form = self._auto_match(ctx.form)
        idp_id = parse_provider_selection(form.get(PROVIDER_FIELD))
        if idp_id is None:
            if PROVIDER_FIELD in form:
                logger.warning("Ignoring malformed provider selection")
            return AuthDecision(action=AuthAction.CONTINUE, record=record)

        return await self._start_sso(ctx, jar, record, idp_id)

    async def load_state(self, ctx: RequestContext, jar: CookieJar) -> LoginStateRecord:
        """
        Resolve the tracked session and load its record, creating it on first visit.

        Raises:
            IdentifierMigrationFailure: If the tracked session cannot be resumed.
            StateLoadFailure: If the store cannot be read.
            StateWriteFailure: If a new record cannot be created.
        """
        tracked_id = await self.tracker.resolve(ctx, jar)
        set_request_context(tracked_session_id=tracked_id)

        record = await self.store.load(tracked_id)
        if record is None:
            record = LoginStateRecord(
                tracked_session_id=tracked_id,
                host_session_name=self.host.cookie_name,
                user_name=ctx.audit_user_name(),
                host_authenticated=bool(ctx.host_user_name),
                location=ctx.location,
            )
            return await self.store.create_or_load(record)

        changes: Dict[str, object] = {}
        if ctx.host_user_name and record.user_name != ctx.host_user_name:
            changes["user_name"] = ctx.host_user_name
        record = record.touch(ctx.location)
        if changes:
            record = record.with_changes(**changes)
        # Activity tracking is audit only
        await self.store.update(record)
        if record.idp_id:
            set_request_context(idp_id=record.idp_id)
        return record

    async def _excluded(
        self,
        ctx: RequestContext,
        jar: CookieJar,
        rule: ExclusionRule,
    ) -> AuthDecision:
        action = AuthAction.DENY if rule.action == ExclusionAction.DENY else AuthAction.ALLOW
        if not self.persist_excluded:
            return AuthDecision(action=action)

        record = await self.load_state(ctx, jar)
        changes = {"excluded_path": ctx.path, "excluded_action": rule.action.value}
        if self.phases.can_transition(record.phase, Phase.EXCLUDED):
            record = self.phases.set_phase(record, Phase.EXCLUDED)
        record = record.with_changes(**changes)
        await self.store.update(record)
        return AuthDecision(action=action, record=record)

    def _is_logout(self, path: str) -> bool:
        return (path.rstrip("/") or "/") == self.logout_path

    async def _end_session(
        self,
        ctx: RequestContext,
        jar: CookieJar,
        record: LoginStateRecord,
        phase: Phase,
    ) -> AuthDecision:
        record = self._advance(record, phase)
        if phase == Phase.FORCE_LOGGED_OFF:
            record = record.with_changes(enforce_logoff=False)
        if not await self.store.update(record):
            logger.error(f"Could not record {phase.name} for the ended session")
        self.host.destroy(ctx, jar)
        self.tracker.clear_marker(jar)
        return AuthDecision(action=AuthAction.LOGGED_OFF, location=self.root_url, record=record)

    async def _logout(self, ctx: RequestContext, jar: CookieJar, record: LoginStateRecord) -> AuthDecision:
        self.host.suppress_auto_login(jar)
        logger.info("User logged off")
        return await self._end_session(ctx, jar, record, Phase.LOGGED_OFF)

    async def _force_logoff(self, ctx: RequestContext, jar: CookieJar, record: LoginStateRecord) -> AuthDecision:
        security_logger.warning(
            f"Forced logoff of session for user '{record.user_name}'",
            extra={"record_id": record.id},
        )
        return await self._end_session(ctx, jar, record, Phase.FORCE_LOGGED_OFF)

    def _auto_match(self, form: Dict[str, str]) -> Dict[str, str]:
        """Select the provider registered for the domain typed into the login form."""
        form = dict(form)
        for key, value in list(form.items()):
            if LOGIN_FIELD_MARKER not in key or not value:
                continue
            idp_id = self.providers.find_by_email_domain(str(value))
            if idp_id is not None:
                logger.info(f"Login name matches the domain of provider {idp_id}")
                form[PROVIDER_FIELD] = str(idp_id)
        return form

    async def _restart_flow(
        self,
        ctx: RequestContext,
        jar: CookieJar,
    ) -> Tuple[RequestContext, LoginStateRecord]:
        """
        Start over under a fresh tracked session.

        Used when a new login is requested from a session whose record can
        no longer reach SAML_REDIRECTED (finished, failed halfway or ended).
        """
        self.host.destroy(ctx, jar)
        self.tracker.clear_marker(jar)
        session = self.host.ensure(jar)
        ctx = dataclasses.replace(ctx, host_session_id=session.session_id)
        return ctx, await self.load_state(ctx, jar)

    async def _start_sso(
        self,
        ctx: RequestContext,
        jar: CookieJar,
        record: LoginStateRecord,
        idp_id: int,
    ) -> AuthDecision:
        provider = self.providers.get(idp_id)
        if provider is None or not provider.is_active:
            logger.info(f"Ignoring login request for unknown or inactive provider {idp_id}")
            return AuthDecision(action=AuthAction.CONTINUE, record=record)

        if not self.phases.can_transition(record.phase, Phase.SAML_REDIRECTED):
            logger.info(f"New login requested from phase {record.phase.name}, starting a new flow")
            ctx, record = await self._restart_flow(ctx, jar)

        set_request_context(idp_id=idp_id)
        record = self._advance(record.with_changes(idp_id=idp_id), Phase.SAML_REDIRECTED)
        # Replay detection on the way back depends on this write
        await self.store.update_or_fail(record, "saml_redirected")

        redirect_url, request_xml, request_id = self.protocol.build_redirect(
            provider,
            return_to=self.root_url,
            request_data=ctx.saml_request_data(),
        )

        # The response is only accepted when it answers this request
        record = record.with_changes(pending_request_blob=request_xml, pending_request_id=request_id)
        await self.store.update_or_fail(record, "saml_request_id")

        return AuthDecision(action=AuthAction.REDIRECT, location=redirect_url, record=record)

    def _advance(self, record: LoginStateRecord, phase: Phase) -> LoginStateRecord:
        try:
            return self.phases.set_phase(record, phase)
        except PhaseTransitionError as e:
            raise StateWriteFailure(operation="set_phase", internal_message=str(e)) from e

    # =========================================================================
    # Return leg
    # =========================================================================

    async def handle_response(
        self,
        ctx: RequestContext,
        jar: CookieJar,
        post_data: Dict[str, str],
    ) -> AuthDecision:
        """
        Process the SAMLResponse posted back by the IdP.

        Raises:
            ReplayOrPhaseMismatchFailure: If the session is not waiting for a response.
            ProviderInitFailure: If the provider is gone or misconfigured.
            AssertionVerificationFailure: If python3-saml rejects the response.
            ClaimValidationFailure: If the claims do not identify a real user.
            UserProvisioningFailure: If no local user can be matched or created.
            StateWriteFailure: If the acceptance cannot be recorded.
        """
        record = await self.load_state(ctx, jar)

        if record.phase != Phase.SAML_REDIRECTED:
            security_logger.warning(
                f"SAML response received in phase {record.phase.name}, rejecting",
                extra={"record_id": record.id, "record_phase": int(record.phase)},
            )
            raise ReplayOrPhaseMismatchFailure(
                tracked_session_id=record.tracked_session_id,
                current_phase=int(record.phase),
            )

        provider = self.providers.get(record.idp_id)
        if provider is None or not provider.is_active:
            raise ProviderInitFailure(
                idp_id=record.idp_id,
                internal_message=f"Provider {record.idp_id} is no longer available",
            )

        claims, response_xml = self.protocol.verify_and_decode(
            provider,
            ctx.saml_request_data(post_data),
            request_id=record.pending_request_id or None,
        )

        # From here on a second copy of the same response must be refused
        record = self._advance(record.with_changes(pending_response_blob=response_xml), Phase.EXTERNAL_AUTHED)
        await self.store.update_or_fail(record, "external_authed")

        identity = self.resolver.resolve(claims)
        user = await self.users.find_or_create(identity, allow_jit=provider.user_jit)
        user = await self.rule_engine.apply(claims, user)

        self.host.establish(ctx, jar, user)

        record = self._advance(record, Phase.LOCAL_AUTHED).with_changes(
            user_id=user.id,
            user_name=user.name,
            host_authenticated=True,
        )
        if not await self.store.update(record):
            logger.error(f"Could not record LOCAL_AUTHED for user {user.name}")

        logger.info(f"SAML login successful for user {user.name} via provider {provider.id}")
        return AuthDecision(action=AuthAction.REFRESH, location=self.root_url, record=record)
