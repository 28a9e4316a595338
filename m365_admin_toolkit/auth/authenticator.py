"""
Authentication module — one Authenticator, five interchangeable credential modes.
Uses MSAL for token acquisition against Microsoft Identity Platform.
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal
import requests

from ..config import AuthConfig, AUTH_MODES, RESOURCE_SCOPES, ToolkitError

logger = logging.getLogger("m365_admin_toolkit.auth")


class AuthenticationError(ToolkitError):
    """Raised when authentication fails."""
    pass


def resource_scope(resource: str) -> str:
    """Map a resource alias ("graph", "arm") or a resource URL to its .default scope."""
    if resource in RESOURCE_SCOPES:
        return RESOURCE_SCOPES[resource]
    if resource.startswith("https://"):
        return f"{resource.rstrip('/')}/.default"
    raise AuthenticationError(f"Unknown resource: {resource}")


def _explain(result: dict, flow: str) -> str:
    error = result.get("error_description") or result.get("error") or "Unknown"
    text = f"{flow} auth failed: {error}"
    if "AADSTS65001" in error or "consent" in error.lower():
        text += " (admin consent may not have been granted for this app)"
    elif "AADSTS700027" in error or "AADSTS700024" in error:
        text += " (the certificate is not registered on the app, or it has expired)"
    return text


class Authenticator:
    """
    Handles MSAL-based authentication for Graph, SharePoint and ARM.
    Supports:
      - Certificate-based app-only authentication
      - Client secret app-only authentication
      - Delegated device code flow
      - Delegated interactive browser flow
      - Azure managed identity (system- or user-assigned)
    Tokens are cached per scope for the lifetime of the instance.
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._tokens: dict[str, str] = {}
        self._app = None

    async def acquire_token(self, resource: str = "graph") -> str:
        """Acquire an access token for a resource using the configured mode."""
        mode = self.config.mode
        if mode not in AUTH_MODES:
            raise AuthenticationError(f"Unknown auth mode: {mode}")

        scope = resource_scope(resource)
        if scope in self._tokens:
            return self._tokens[scope]

        if mode == "client_secret" and "sharepoint.com" in scope:
            logger.warning(
                "SharePoint REST rejects app-only tokens issued for a client secret; "
                "use certificate auth for SharePoint admin operations."
            )

        if mode == "certificate":
            token = self._acquire_certificate_token(scope)
        elif mode == "client_secret":
            token = self._acquire_secret_token(scope)
        elif mode == "device_code":
            token = self._acquire_device_code_token(scope)
        elif mode == "interactive":
            token = self._acquire_interactive_token(scope)
        else:
            token = self._acquire_managed_identity_token(scope)

        self._tokens[scope] = token
        return token

    @property
    def authority(self) -> str:
        if not self.config.tenant_id:
            raise AuthenticationError("Tenant ID not configured.")
        return f"https://login.microsoftonline.com/{self.config.tenant_id}"

    # --- App-only ---

    def _load_certificate(self) -> dict:
        """Load the base64 PFX and return an MSAL client_credential dict."""
        cert_path = self.config.certificate_path
        password = self.config.certificate_password
        if not password:
            password = os.environ.get("M365_CERT_PASSWORD", "")
        if not password:
            password = getpass.getpass("Enter the certificate password: ")

        try:
            with open(cert_path, "r") as f:
                cert_base64 = f.read().strip()

            cert_bytes = base64.b64decode(cert_base64)
            password_bytes = password.encode("utf-8") if password else None

            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                cert_bytes, password_bytes
            )
        except FileNotFoundError:
            raise AuthenticationError(
                f"Certificate file not found: {cert_path}. "
                "Point --cert-path at a base64-encoded PFX."
            )
        except ValueError as e:
            raise AuthenticationError(f"Failed to load certificate: {e}")

        if private_key is None or certificate is None:
            raise AuthenticationError(f"PFX at {cert_path} has no private key or certificate.")

        private_key_pem = private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8")
        thumbprint = certificate.fingerprint(SHA1()).hex()
        logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")

        return {"thumbprint": thumbprint, "private_key": private_key_pem}

    def _confidential_app(self, credential) -> msal.ConfidentialClientApplication:
        if self._app is None:
            self._app = msal.ConfidentialClientApplication(
                client_id=self.config.client_id,
                authority=self.authority,
                client_credential=credential,
            )
        return self._app

    def _acquire_certificate_token(self, scope: str) -> str:
        logger.info("Authenticating with certificate-based app credentials...")
        credential = self._load_certificate() if self._app is None else None
        app = self._confidential_app(credential)
        result = app.acquire_token_for_client(scopes=[scope])
        return self._token_from(result, "Certificate")

    def _acquire_secret_token(self, scope: str) -> str:
        logger.info("Authenticating with client secret...")
        secret = self.config.client_secret or os.environ.get("M365_CLIENT_SECRET", "")
        if not secret:
            raise AuthenticationError(
                "Client secret not provided. Set it in the config or M365_CLIENT_SECRET."
            )
        app = self._confidential_app(secret)
        result = app.acquire_token_for_client(scopes=[scope])
        return self._token_from(result, "Client secret")

    def _acquire_managed_identity_token(self, scope: str) -> str:
        logger.info("Authenticating with managed identity...")
        if self._app is None:
            if self.config.managed_identity_client_id:
                identity = msal.UserAssignedManagedIdentity(
                    client_id=self.config.managed_identity_client_id
                )
            else:
                identity = msal.SystemAssignedManagedIdentity()
            self._app = msal.ManagedIdentityClient(identity, http_client=requests.Session())
        # Managed identity endpoints take a resource, not a scope
        resource = scope[: -len("/.default")] if scope.endswith("/.default") else scope
        result = self._app.acquire_token_for_client(resource=resource)
        return self._token_from(result, "Managed identity")

    # --- Delegated ---

    def _public_app(self) -> msal.PublicClientApplication:
        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=self.config.client_id,
                authority=self.authority,
            )
        return self._app

    def _scopes(self, scope: str) -> list[str]:
        if self.config.delegated_scopes and "graph.microsoft.com" in scope:
            return list(self.config.delegated_scopes)
        return [scope]

    def _silent(self, app: msal.PublicClientApplication, scopes: list[str]) -> Optional[str]:
        accounts = app.get_accounts()
        if not accounts:
            return None
        result = app.acquire_token_silent(scopes, account=accounts[0])
        if result and "access_token" in result:
            logger.info("Reused cached delegated sign-in.")
            return result["access_token"]
        return None

    def _acquire_device_code_token(self, scope: str) -> str:
        app = self._public_app()
        scopes = self._scopes(scope)
        cached = self._silent(app, scopes)
        if cached:
            return cached

        logger.info("Initiating device code authentication flow...")
        flow = app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = app.acquire_token_by_device_flow(flow)
        return self._token_from(result, "Device code")

    def _acquire_interactive_token(self, scope: str) -> str:
        app = self._public_app()
        scopes = self._scopes(scope)
        cached = self._silent(app, scopes)
        if cached:
            return cached

        logger.info("Opening browser for interactive sign-in...")
        result = app.acquire_token_interactive(scopes=scopes, prompt="select_account")
        return self._token_from(result, "Interactive")

    @staticmethod
    def _token_from(result: Optional[dict], flow: str) -> str:
        if result and "access_token" in result:
            logger.info(f"{flow} authentication successful.")
            return result["access_token"]
        raise AuthenticationError(_explain(result or {}, flow))
