"""
WSGI config for demo_tracker_project project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "demo_tracker_project.settings")

application = get_wsgi_application()
