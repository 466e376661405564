from django.contrib.auth import get_user_model
from rest_framework.test import APITestCase

from apps.maintains.models import Maintains

User = get_user_model()


class MaintainsApiTests(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin", password="admin123", role="ADMIN")
        self.manager = User.objects.create_user(username="manager", password="manager123", role="MANAGER")

    def auth_as(self, username, password):
        response = self.client.post("/api/v1/auth/token/", {"username": username, "password": password}, format="json")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

    def test_admin_creates_locations_and_filters_by_kind(self):
        self.auth_as("admin", "admin123")
        outlet = self.client.post("/api/v1/maintains/", {"name": "Gulshan", "kind": "OUTLET"}, format="json")
        self.assertEqual(outlet.status_code, 201)
        self.client.post("/api/v1/maintains/", {"name": "Tongi factory", "kind": "PRODUCTION"}, format="json")

        response = self.client.get("/api/v1/maintains/?kind=production")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["name"] for item in response.data["results"]], ["Tongi factory"])

    def test_manager_cannot_create_locations(self):
        self.auth_as("manager", "manager123")
        response = self.client.post("/api/v1/maintains/", {"name": "Uttara", "kind": "OUTLET"}, format="json")
        self.assertEqual(response.status_code, 403)
        self.assertFalse(Maintains.objects.exists())

    def test_anonymous_requests_are_rejected(self):
        response = self.client.get("/api/v1/maintains/")
        self.assertEqual(response.status_code, 401)
