from django.db import models
from ..managers import TenantManager
from .company import Company


# ---------- Construction project (cost center) ----------
class Project(models.Model):

    # Multi-tenant
    company = models.ForeignKey(Company, on_delete=models.CASCADE)

    name = models.CharField(max_length=200)
    # Optional short site code printed on challans ("PRJ-07")
    code = models.CharField(max_length=32, blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["company", "name"], name="uq_company_project_name"
            ),
        ]

    def __str__(self):
        return self.name
