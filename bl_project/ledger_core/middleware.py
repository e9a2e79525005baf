from django.utils.deprecation import MiddlewareMixin
from .models import Company


class CurrentCompanyMiddleware(MiddlewareMixin):
    # Run on every request and attach a .company attribute
    # to the request, based on the logged-in user
    def process_request(self, request):
        request.company = None
        if not request.user.is_authenticated:
            return

        companies = Company.objects.filter(
            memberships__user=request.user, memberships__is_active=True)

        # If user switched companies,
        # choice is stored in the session as "active_company_id"
        company_id = request.session.get("active_company_id")
        if company_id:
            # ensure security: user must be a member of that company,
            # a tampered session id simply resolves to nothing
            request.company = companies.filter(pk=company_id).first()
        else:
            # Default company fallback: first membership
            request.company = companies.order_by("pk").first()
