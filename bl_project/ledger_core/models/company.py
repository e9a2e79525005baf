from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils.text import slugify
from ..managers import TenantManager


# ---------- Tenant / Company ----------
class Company(models.Model):

    """Tenant / construction company"""
    # Store company's full display name
    name = models.CharField(max_length=200)

    slug = models.SlugField(  # A URL-friendly identifier
        max_length=80,
        unique=True,  # no two companies can have the same slug
        blank=True,  # filled from name on first save
    )

    # Store timestamp when the record is first created
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "companies"

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = unique_company_slug(self.name)
        return super().save(*args, **kwargs)


def unique_company_slug(name, max_tries=100):
    # Convert company name into a slug (e.g., "Test Ltd" → "test-ltd")
    base = slugify(name) or "company"
    slug = base
    i = 1
    # If plain slug is taken, append -1, -2, etc.
    while Company.objects.filter(slug=slug).exists():
        slug = f"{base}-{i}"
        i += 1
        if i > max_tries:
            raise RuntimeError("Couldn't generate unique slug")
    return slug


# ---------- EntityMembership ----------
class EntityMembership(models.Model):  # Bridge table between User and Company

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        # If user is deleted, their memberships go too
        on_delete=models.CASCADE,
        related_name="memberships",  # See all companies users belong to
    )
    company = models.ForeignKey(
        Company, on_delete=models.CASCADE, related_name="memberships"
    )

    # Suspend someone's access without deleting the record
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    # Enforce tenant scoping
    objects = TenantManager()

    class Meta:
        # one user can only have one membership per company
        constraints = [
            models.UniqueConstraint(
                fields=["user", "company"], name="uq_user_company_membership"
            ),
        ]

    def __str__(self):
        return f"{self.user} @ {self.company}"

    def clean(self):
        if not self.company_id:
            raise ValidationError("Membership needs a company.")
