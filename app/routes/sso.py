"""
SSO endpoints.

- ACS: receives the SAMLResponse posted back by the IdP
- SP metadata per provider
- Login buttons for the login page
- Read-only audit view of login states per provider

The forward leg of the login (provider selection and the IdP redirect)
runs in LoginFlowMiddleware, not here.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.dependencies import get_app_settings, get_orchestrator, verify_audit_key
from app.error_handlers import login_flow_error_response
from app.middleware.loginflow import build_request_context
from app.responses import refresh_response
from samlflow.auth.sso import extract_certificate_info, generate_sp_metadata
from samlflow.config import Settings
from samlflow.errors import LoginFlowError
from samlflow.loginflow import AuthOrchestrator
from samlflow.state import CookieJar

router = APIRouter(prefix="/sso", tags=["sso"])


async def saml_acs(
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """
    SAML Assertion Consumer Service.

    Registered at LOGINFLOW_ACS_PATH by the application factory.
    """
    form = await request.form()
    post_data = {
        "SAMLResponse": str(form.get("SAMLResponse", "")),
        "RelayState": str(form.get("RelayState", "")),
    }

    jar = CookieJar(request.cookies)
    session = orchestrator.host.ensure(jar)
    ctx = build_request_context(request, session, post_data)

    try:
        decision = await orchestrator.handle_response(ctx, jar, post_data)
    except LoginFlowError as exc:
        response = login_flow_error_response(request, exc)
        jar.apply(response)
        return response

    response = refresh_response(
        decision.location or "/",
        settings.loginflow.base_url,
        settings.loginflow.meta_refresh,
    )
    jar.apply(response)
    return response


@router.get(
    "/metadata/{idp_id}",
    response_class=Response,
    summary="Get SAML SP Metadata",
    description="Service Provider metadata XML to hand to the Identity Provider.",
)
async def get_saml_metadata(
    idp_id: int,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    provider = orchestrator.providers.get(idp_id)
    if provider is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    metadata = generate_sp_metadata(
        provider,
        settings.loginflow.base_url,
        settings.loginflow.acs_path,
    )
    return Response(
        content=metadata,
        media_type="application/xml",
        headers={
            "Content-Disposition": f'attachment; filename="sp-metadata-{idp_id}.xml"'
        },
    )


@router.get(
    "/buttons",
    summary="Login buttons",
    description="Active providers to render as buttons on the login page.",
)
async def get_login_buttons(
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    return {
        "success": True,
        "buttons": orchestrator.providers.login_buttons(settings.loginflow.button_name_length),
    }


@router.get(
    "/audit/{idp_id}",
    summary="Login state audit",
    description="Login states started with a provider, newest first. Requires X-Audit-Key.",
    dependencies=[Depends(verify_audit_key)],
)
async def get_login_audit(
    idp_id: int,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    records = await orchestrator.store.query_by_provider(idp_id)
    result: Dict[str, Any] = {
        "success": True,
        "idp_id": idp_id,
        "count": len(records),
        "records": [record.to_audit_dict() for record in records],
    }
    provider = orchestrator.providers.get(idp_id)
    if provider is not None and provider.idp_certificate:
        result["idp_certificate"] = extract_certificate_info(provider.idp_certificate)
    return result
