import getpass

from django.contrib.auth.models import User
from django.core.management.base import BaseCommand, CommandError

from apps.services.auth_service import set_cancel_password


class Command(BaseCommand):
    help = "Set the password a user must enter to cancel a confirmed alert."

    def add_arguments(self, parser):
        parser.add_argument('username')
        parser.add_argument(
            '--password',
            help="Cancel password. Prompted for when omitted.",
        )

    def handle(self, *args, **options):
        try:
            user = User.objects.get(username=options['username'])
        except User.DoesNotExist:
            raise CommandError(f"User '{options['username']}' does not exist.")

        password = options.get('password')
        if password is None:
            password = getpass.getpass("Cancel password: ")
            if password != getpass.getpass("Cancel password (again): "):
                raise CommandError("Passwords do not match.")
        if not password:
            raise CommandError("Cancel password cannot be empty.")

        set_cancel_password(user, password)
        self.stdout.write(self.style.SUCCESS(f"Cancel password set for {user.username}."))
