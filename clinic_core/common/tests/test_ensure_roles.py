import pytest
from django.contrib.auth.models import Group
from django.core.management import CommandError, call_command

from clinic_core.common.permissions import ALL_ROLES

pytestmark = pytest.mark.django_db


def test_ensure_roles_is_idempotent(capsys):
    call_command("ensure_roles")
    call_command("ensure_roles")

    assert set(Group.objects.values_list("name", flat=True)) == set(ALL_ROLES)
    out = capsys.readouterr().out
    assert f"Newly created: {len(ALL_ROLES)}" in out
    assert "Newly created: 0" in out


def test_assigns_user_to_role(django_user_model):
    user = django_user_model.objects.create_user(username="amina", password="x")

    call_command("ensure_roles", user="amina", role="PHARMACY")

    assert list(user.groups.values_list("name", flat=True)) == ["PHARMACY"]


def test_user_and_role_go_together():
    with pytest.raises(CommandError):
        call_command("ensure_roles", user="amina")


def test_unknown_user_is_reported():
    with pytest.raises(CommandError):
        call_command("ensure_roles", user="ghost", role="NURSE")
