import os
from django.core.management.base import BaseCommand
from django.contrib.auth import get_user_model

from demokit.models import TeamMember


class Command(BaseCommand):
    help = 'Create or update the admin superuser and its team member record from environment variables'

    def handle(self, *args, **options):
        User = get_user_model()
        username = os.environ.get('DJANGO_SUPERUSER_USERNAME', 'admin')
        password = os.environ.get('DJANGO_SUPERUSER_PASSWORD', '')
        email = os.environ.get('DJANGO_SUPERUSER_EMAIL', 'admin@example.com').lower()
        first_name = os.environ.get('DJANGO_SUPERUSER_FIRST_NAME', 'Admin')
        last_name = os.environ.get('DJANGO_SUPERUSER_LAST_NAME', 'User')

        if not password:
            self.stderr.write(self.style.ERROR(
                'DJANGO_SUPERUSER_PASSWORD environment variable is required'
            ))
            return

        user, created = User.objects.get_or_create(
            username=username,
            defaults={'email': email, 'is_staff': True, 'is_superuser': True},
        )
        user.set_password(password)
        user.email = email
        user.first_name = first_name
        user.last_name = last_name
        user.is_staff = True
        user.is_superuser = True
        user.save()
        self.stdout.write(self.style.SUCCESS(
            f'Superuser "{username}" {"created" if created else "updated"}'
        ))

        # Admins must be selectable as loan responsibles
        member, member_created = TeamMember.objects.update_or_create(
            email=email,
            defaults={
                'first_name': first_name,
                'last_name': last_name,
                'role': 'admin',
                'status': 'active',
            },
        )
        self.stdout.write(self.style.SUCCESS(
            f'Team member "{member.full_name}" {"created" if member_created else "updated"}'
        ))
