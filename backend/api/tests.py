from unittest.mock import patch

from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from api import rbac
from api.authentication import Principal


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="garage-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="garage-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_USERNAME_CLAIM="preferred_username",
        AUTH_ROLES_CLAIM="roles",
        AUTH_COMPANY_CLAIM="company_id",
    )
    @patch("api.authentication._verify_jwt_with_jwks")
    def test_whoami_maps_token_claims(self, mock_verify) -> None:
        mock_verify.return_value = {
            "sub": "u-42",
            "preferred_username": "mechanic",
            "roles": "PURCHASER, APPROVER",
            "company_id": "9",
        }

        response = self.client.get("/api/v1/auth/whoami/", HTTP_AUTHORIZATION="Bearer abc.def.ghi")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "u-42")
        self.assertEqual(body["username"], "mechanic")
        self.assertEqual(body["company_id"], 9)
        self.assertEqual(body["roles"], ["PURCHASER", "APPROVER"])
        self.assertIn(rbac.PERM_PURCHASE_ORDER_APPROVE, body["permissions"])
        mock_verify.assert_called_once_with(
            "abc.def.ghi", "https://issuer.example/.well-known/jwks.json"
        )

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["STOREKEEPER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=3,
    )
    def test_whoami_dev_principal(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertEqual(body["company_id"], 3)
        self.assertEqual(body["roles"], ["STOREKEEPER"])
        self.assertIn(rbac.PERM_PURCHASE_ORDER_RECEIVE, body["permissions"])
        self.assertNotIn(rbac.PERM_PURCHASE_ORDER_CREATE, body["permissions"])


class RbacResolutionTests(TestCase):
    def test_super_admin_gets_override(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(user_id="root", username="root", roles=["super_admin"])

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(roles, ["super_admin"])
        self.assertIn(rbac.PERM_APPROVAL_OVERRIDE, permissions)
        self.assertIn(rbac.PERM_PURCHASE_RETURN_APPROVE, permissions)

    def test_explicit_permissions_are_kept_and_cached(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(
            user_id="u1",
            username="u1",
            roles=["APPROVER"],
            permissions=["purchasing.custom.report"],
        )

        _, permissions = rbac.resolve_roles_and_permissions(request, principal)
        principal.roles = []
        _, cached = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(permissions[0], "purchasing.custom.report")
        self.assertIn(rbac.PERM_PURCHASE_ORDER_APPROVE, permissions)
        self.assertIs(cached, permissions)
        self.assertNotIn(rbac.PERM_APPROVAL_OVERRIDE, permissions)
