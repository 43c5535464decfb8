from decimal import Decimal
from django.contrib.auth.models import Permission
from django.core.cache import cache
from django.test import TestCase
from core.cache_service import CacheService
from core.models import Participant
from core.permissions import VALIDATE_FEE, VALIDATE_PROCEDURE, has_capability


class CapabilityTest(TestCase):  # CapabilityTest class implementation
    def setUp(self):  # Setup
        self.doctor = Participant.objects.create_user(
            email="doctor@test.com", password="test123", role="doctor"
        )
        self.treasurer = Participant.objects.create_user(
            email="treasurer@test.com", password="test123", role="treasurer"
        )

    def test_role_grants_capability(self):  # Test role grants capability
        self.assertTrue(has_capability(self.treasurer, VALIDATE_FEE))
        self.assertTrue(has_capability(self.treasurer, VALIDATE_PROCEDURE))

    def test_performer_has_no_capability(self):  # Test performer has no capability
        self.assertFalse(has_capability(self.doctor, VALIDATE_FEE))
        self.assertFalse(has_capability(self.doctor, VALIDATE_PROCEDURE))

    def test_explicit_permission_grants_capability(self):  # Test explicit permission grants capability
        permission = Permission.objects.get(codename="validate_procedure", content_type__app_label="jaspel")
        self.doctor.user_permissions.add(permission)
        doctor = Participant.objects.get(pk=self.doctor.pk)
        self.assertTrue(has_capability(doctor, VALIDATE_PROCEDURE))
        self.assertFalse(has_capability(doctor, VALIDATE_FEE))

    def test_inactive_and_missing_actor(self):  # Test inactive and missing actor
        self.treasurer.is_active = False
        self.treasurer.save()
        self.assertFalse(has_capability(self.treasurer, VALIDATE_FEE))
        self.assertFalse(has_capability(None, VALIDATE_FEE))


class CacheServiceTest(TestCase):  # CacheServiceTest class implementation
    def setUp(self):  # Setup
        cache.clear()
        self.service = CacheService(default_timeout=60)

    def test_get_or_set_computes_once(self):  # Test get or set computes once
        calls = []

        def compute():
            calls.append(1)
            return {"count": 1}

        self.assertEqual(self.service.get_or_set("k", compute), {"count": 1})
        self.assertEqual(self.service.get_or_set("k", compute), {"count": 1})
        self.assertEqual(len(calls), 1)

    def test_increment_skips_missing_key(self):  # Test increment skips missing key
        self.assertIsNone(self.service.increment("absent", {"count": 1}))
        self.assertIsNone(cache.get("absent"))

    def test_increment_existing_aggregate(self):  # Test increment existing aggregate
        self.service.set("agg", {"count": 2, "total": Decimal("100.00")})
        updated = self.service.increment("agg", {"count": 1, "total": Decimal("50.00")})
        self.assertEqual(updated["count"], 3)
        self.assertEqual(updated["total"], Decimal("150.00"))
        self.assertEqual(cache.get("agg")["count"], 3)

    def test_decrement_floors_at_zero(self):  # Test decrement floors at zero
        self.service.set("agg", {"count": 1, "total": Decimal("10.00")})
        updated = self.service.decrement("agg", {"count": 3, "total": Decimal("25.00")})
        self.assertEqual(updated["count"], 0)
        self.assertEqual(updated["total"], Decimal("0"))

    def test_bump_returns_previous_value(self):  # Test bump returns previous value
        self.assertEqual(self.service.bump("counter"), 0)
        self.assertEqual(self.service.bump("counter"), 1)
        self.assertEqual(cache.get("counter"), 2)

    def test_invalidate(self):  # Test invalidate
        self.service.set("a", 1)
        self.service.set("b", 2)
        removed = self.service.invalidate("a", None, "b")
        self.assertEqual(removed, ["a", "b"])
        self.assertIsNone(cache.get("a"))
        self.assertIsNone(cache.get("b"))


class HealthCheckTest(TestCase):  # HealthCheckTest class implementation
    def test_degraded_without_formula(self):  # Test degraded without formula
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "degraded")
        self.assertEqual(response.json()["active_formulas"], [])

    def test_healthy_with_active_formulas(self):  # Test healthy with active formulas
        from jaspel.models import FeeFormula

        for window in ("morning", "afternoon"):
            FeeFormula.objects.create(
                shift_window=window, threshold=40, general_tier=Decimal("5000"), insurance_tier=Decimal("3000")
            )
        body = self.client.get("/health/").json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["active_formulas"], ["afternoon", "morning"])
        self.assertEqual(body["database"], "connected")
