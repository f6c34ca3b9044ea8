# Infrastructure clients
from clients.vault_client import VaultClient, VaultError, get_database_url
from clients.postgres_client import PostgresClient, Transaction, TableGateway
from clients.filters import Filter, eq, neq, lt, lte, gt, gte, in_
