# clinic_core/common/management/commands/ensure_roles.py
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand, CommandError

from clinic_core.common.permissions import ALL_ROLES


class Command(BaseCommand):
    help = (
        "Create the clinic role groups (RECEPTION, NURSE, DOCTOR, LAB, PHARMACY, BILLING, ADMIN, READONLY). "
        "With --user/--role, also put a staff account into a station's group."
    )

    def add_arguments(self, parser):
        parser.add_argument("--user", help="Username to assign.")
        parser.add_argument("--role", choices=ALL_ROLES, help="Role group for --user.")

    def handle(self, *args, **options):
        created = [name for name in ALL_ROLES if Group.objects.get_or_create(name=name)[1]]
        self.stdout.write(self.style.SUCCESS(f"Roles ensured. Newly created: {len(created)}"))

        username, role = options.get("user"), options.get("role")
        if not username and not role:
            return
        if not (username and role):
            raise CommandError("--user and --role must be given together.")

        try:
            user = get_user_model().objects.get(username=username)
        except get_user_model().DoesNotExist:
            raise CommandError(f"User {username!r} does not exist.")

        user.groups.add(Group.objects.get(name=role))
        self.stdout.write(self.style.SUCCESS(f"{username} can now act as {role}."))
