from unittest import mock

from django.db import OperationalError
from rest_framework.test import APITestCase


class HealthApiTests(APITestCase):
    def test_health_reports_database_ok_without_auth(self):
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "ok", "database": "ok"})

    def test_health_reports_unavailable_database(self):
        broken = mock.MagicMock()
        broken.cursor.side_effect = OperationalError("down")
        with mock.patch("apps.health.views.connection", broken):
            response = self.client.get("/health/")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["database"], "unavailable")
