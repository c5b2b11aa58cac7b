from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import redirect
from urllib.parse import quote


class LoginRequiredMiddleware:
    """
    Require an authenticated user everywhere except:
    - Login / logout URLs
    - Django admin (has its own login)
    - Static files (served by WhiteNoise)

    API calls get a 401 JSON body instead of a redirect to the login page.
    """

    EXEMPT_PREFIXES = (
        '/accounts/login/',
        '/accounts/logout/',
        '/admin/',
        '/static/',
    )

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not request.user.is_authenticated:
            path = request.path
            if not any(path.startswith(p) for p in self.EXEMPT_PREFIXES):
                if path.startswith('/api/'):
                    return JsonResponse(
                        {'success': False, 'error': 'Authentication required'}, status=401
                    )
                return redirect(f'{settings.LOGIN_URL}?next={quote(request.get_full_path())}')

        return self.get_response(request)
