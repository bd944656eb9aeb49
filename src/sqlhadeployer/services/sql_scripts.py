"""T-SQL and PowerShell text pushed to the SQL Server instances."""

import base64
import json
from typing import Any, Dict, Sequence

from sqlhadeployer.constants import AG_ENDPOINT_PORT, SQL_PORT

JSON_BEGIN_MARKER = "SQLHA-JSON-BEGIN"
JSON_END_MARKER = "SQLHA-JSON-END"

REPLICA_COLUMNS = (
    "replica_server_name",
    "role_desc",
    "availability_mode_desc",
    "failover_mode_desc",
    "connected_state_desc",
    "synchronization_health_desc",
)
LISTENER_COLUMNS = ("dns_name", "port", "ip_address", "state_desc")


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def availability_group_query(ag_name: str) -> str:
    return (
        "SELECT ag.name AS name, ags.primary_replica AS primary_replica "
        "FROM sys.availability_groups ag "
        "LEFT JOIN sys.dm_hadr_availability_group_states ags ON ags.group_id = ag.group_id "
        f"WHERE ag.name = {quote_literal(ag_name)};"
    )


def replica_state_query(ag_name: str) -> str:
    return (
        "SELECT ar.replica_server_name, ars.role_desc, ar.availability_mode_desc, "
        "ar.failover_mode_desc, ars.connected_state_desc, ars.synchronization_health_desc "
        "FROM sys.availability_replicas ar "
        "JOIN sys.dm_hadr_availability_replica_states ars ON ars.replica_id = ar.replica_id "
        "JOIN sys.availability_groups ag ON ag.group_id = ar.group_id "
        f"WHERE ag.name = {quote_literal(ag_name)} "
        "ORDER BY ar.replica_server_name;"
    )


def listener_query(ag_name: str) -> str:
    return (
        "SELECT l.dns_name, l.port, ip.ip_address, ip.state_desc "
        "FROM sys.availability_group_listeners l "
        "JOIN sys.availability_group_listener_ip_addresses ip ON ip.listener_id = l.listener_id "
        "JOIN sys.availability_groups ag ON ag.group_id = l.group_id "
        f"WHERE ag.name = {quote_literal(ag_name)};"
    )


def failover_statement(ag_name: str, force: bool = False) -> str:
    option = "FORCE_FAILOVER_ALLOW_DATA_LOSS" if force else "FAILOVER"
    return f"ALTER AVAILABILITY GROUP {quote_identifier(ag_name)} {option};"


def powershell_query(query: str, columns: Sequence[str]) -> str:
    """Wraps a catalog query so run-command stdout carries delimited JSON rows."""
    selected = ", ".join(columns)
    return "\n".join(
        [
            "$ErrorActionPreference = 'Stop'",
            "$rows = Invoke-Sqlcmd -ServerInstance localhost -TrustServerCertificate -Query @'",
            query,
            "'@",
            f"$json = ConvertTo-Json -Compress -InputObject @($rows | Select-Object {selected})",
            f"Write-Output '{JSON_BEGIN_MARKER}'",
            "Write-Output $json",
            f"Write-Output '{JSON_END_MARKER}'",
        ]
    )


def powershell_statement(statement: str) -> str:
    return "\n".join(
        [
            "$ErrorActionPreference = 'Stop'",
            "Invoke-Sqlcmd -ServerInstance localhost -TrustServerCertificate -Query @'",
            statement,
            "'@",
            "Write-Output 'SQLHA-OK'",
        ]
    )


CONFIGURE_SCRIPT = r"""
param(
    [Parameter(Mandatory = $true)][string]$Parameters
)

$ErrorActionPreference = 'Stop'
$Settings = [System.Text.Encoding]::UTF8.GetString([System.Convert]::FromBase64String($Parameters)) | ConvertFrom-Json
$Role = [string]$Settings.Role
$PrimaryServer = [string]$Settings.PrimaryServer
$SecondaryServer = [string]$Settings.SecondaryServer
$PrimaryIP = [string]$Settings.PrimaryIP
$SecondaryIP = [string]$Settings.SecondaryIP
$ListenerIP = [string]$Settings.ListenerIP
$SubnetMask = [string]$Settings.SubnetMask
$SqlAdminUser = [string]$Settings.SqlAdminUser
$SqlAdminPassword = [string]$Settings.SqlAdminPassword
$AGName = [string]$Settings.AGName
$ListenerName = [string]$Settings.ListenerName
$ProbePort = [int]$Settings.ProbePort
if ($Role -notin @('Primary', 'Secondary')) { throw "Unknown role: $Role" }

$CertDir = 'C:\sqlha\certs'
$LocalServer = if ($Role -eq 'Primary') { $PrimaryServer } else { $SecondaryServer }
$PeerIP = if ($Role -eq 'Primary') { $SecondaryIP } else { $PrimaryIP }
$SecurePassword = ConvertTo-SecureString $SqlAdminPassword -AsPlainText -Force
$Credential = New-Object System.Management.Automation.PSCredential ($SqlAdminUser, $SecurePassword)

function Invoke-LocalSql([string]$Query) {
    Invoke-Sqlcmd -ServerInstance localhost -TrustServerCertificate -Query $Query
}

function Invoke-PrimarySql([string]$Query) {
    Invoke-Sqlcmd -ServerInstance $PrimaryIP -Username $SqlAdminUser -Password $SqlAdminPassword -TrustServerCertificate -Query $Query
}

New-Item -ItemType Directory -Force -Path $CertDir | Out-Null
New-SmbShare -Name 'sqlhacerts' -Path $CertDir -FullAccess $SqlAdminUser -ErrorAction SilentlyContinue | Out-Null

foreach ($port in @(__SQL_PORT__, __ENDPOINT_PORT__, $ProbePort)) {
    New-NetFirewallRule -DisplayName "SQLHA-$port" -Direction Inbound -Protocol TCP -LocalPort $port -Action Allow -ErrorAction SilentlyContinue | Out-Null
}

Install-WindowsFeature -Name Failover-Clustering -IncludeManagementTools | Out-Null
if ($Role -eq 'Primary' -and -not (Get-Cluster -ErrorAction SilentlyContinue)) {
    New-Cluster -Name "$AGName-wsfc" -Node $PrimaryServer, $SecondaryServer -AdministrativeAccessPoint DNS -NoStorage | Out-Null
}

Enable-SqlAlwaysOn -ServerInstance localhost -Force

Invoke-LocalSql @"
IF NOT EXISTS (SELECT 1 FROM sys.symmetric_keys WHERE name = '##MS_DatabaseMasterKey##')
    CREATE MASTER KEY ENCRYPTION BY PASSWORD = '$SqlAdminPassword';
IF NOT EXISTS (SELECT 1 FROM sys.certificates WHERE name = '$($LocalServer)_cert')
    CREATE CERTIFICATE [$($LocalServer)_cert] WITH SUBJECT = '$LocalServer AG endpoint';
"@

$LocalCertFile = Join-Path $CertDir "$($LocalServer)_cert.cer"
if (-not (Test-Path $LocalCertFile)) {
    Invoke-LocalSql "BACKUP CERTIFICATE [$($LocalServer)_cert] TO FILE = '$LocalCertFile';"
}

Invoke-LocalSql @"
IF NOT EXISTS (SELECT 1 FROM sys.database_mirroring_endpoints WHERE name = 'Hadr_endpoint')
    CREATE ENDPOINT [Hadr_endpoint] STATE = STARTED
    AS TCP (LISTENER_PORT = __ENDPOINT_PORT__, LISTENER_IP = ALL)
    FOR DATABASE_MIRRORING (AUTHENTICATION = CERTIFICATE [$($LocalServer)_cert], ROLE = ALL, ENCRYPTION = REQUIRED ALGORITHM AES);
"@

if ($Role -eq 'Primary') {
    Invoke-LocalSql @"
IF NOT EXISTS (SELECT 1 FROM sys.availability_groups WHERE name = '$AGName')
    CREATE AVAILABILITY GROUP [$AGName]
    WITH (AUTOMATED_BACKUP_PREFERENCE = PRIMARY, DB_FAILOVER = ON)
    FOR REPLICA ON
        N'$PrimaryServer' WITH (ENDPOINT_URL = N'TCP://$($PrimaryIP):__ENDPOINT_PORT__', AVAILABILITY_MODE = SYNCHRONOUS_COMMIT, FAILOVER_MODE = MANUAL, SEEDING_MODE = AUTOMATIC),
        N'$SecondaryServer' WITH (ENDPOINT_URL = N'TCP://$($SecondaryIP):__ENDPOINT_PORT__', AVAILABILITY_MODE = SYNCHRONOUS_COMMIT, FAILOVER_MODE = MANUAL, SEEDING_MODE = AUTOMATIC);
"@
    Write-Output "Primary $PrimaryServer ready for $AGName"
    exit 0
}

New-PSDrive -Name SqlhaPeer -PSProvider FileSystem -Root "\\$PeerIP\sqlhacerts" -Credential $Credential | Out-Null
Copy-Item "SqlhaPeer:\$($PrimaryServer)_cert.cer" -Destination $CertDir -Force
Copy-Item $LocalCertFile -Destination "SqlhaPeer:\" -Force
Remove-PSDrive -Name SqlhaPeer

$PeerCertFile = Join-Path $CertDir "$($PrimaryServer)_cert.cer"
Invoke-LocalSql @"
IF NOT EXISTS (SELECT 1 FROM sys.server_principals WHERE name = '$($PrimaryServer)_login')
    CREATE LOGIN [$($PrimaryServer)_login] WITH PASSWORD = '$SqlAdminPassword';
IF NOT EXISTS (SELECT 1 FROM sys.database_principals WHERE name = '$($PrimaryServer)_user')
    CREATE USER [$($PrimaryServer)_user] FOR LOGIN [$($PrimaryServer)_login];
IF NOT EXISTS (SELECT 1 FROM sys.certificates WHERE name = '$($PrimaryServer)_peer_cert')
    CREATE CERTIFICATE [$($PrimaryServer)_peer_cert] AUTHORIZATION [$($PrimaryServer)_user] FROM FILE = '$PeerCertFile';
GRANT CONNECT ON ENDPOINT::[Hadr_endpoint] TO [$($PrimaryServer)_login];
"@

$SecondaryCertOnPrimary = "C:\sqlha\certs\$($SecondaryServer)_cert.cer"
Invoke-PrimarySql @"
IF NOT EXISTS (SELECT 1 FROM sys.server_principals WHERE name = '$($SecondaryServer)_login')
    CREATE LOGIN [$($SecondaryServer)_login] WITH PASSWORD = '$SqlAdminPassword';
IF NOT EXISTS (SELECT 1 FROM sys.database_principals WHERE name = '$($SecondaryServer)_user')
    CREATE USER [$($SecondaryServer)_user] FOR LOGIN [$($SecondaryServer)_login];
IF NOT EXISTS (SELECT 1 FROM sys.certificates WHERE name = '$($SecondaryServer)_peer_cert')
    CREATE CERTIFICATE [$($SecondaryServer)_peer_cert] AUTHORIZATION [$($SecondaryServer)_user] FROM FILE = '$SecondaryCertOnPrimary';
GRANT CONNECT ON ENDPOINT::[Hadr_endpoint] TO [$($SecondaryServer)_login];
"@

Invoke-LocalSql @"
IF NOT EXISTS (SELECT 1 FROM sys.availability_groups WHERE name = '$AGName')
BEGIN
    ALTER AVAILABILITY GROUP [$AGName] JOIN;
    ALTER AVAILABILITY GROUP [$AGName] GRANT CREATE ANY DATABASE;
END
"@

Invoke-PrimarySql @"
IF NOT EXISTS (SELECT 1 FROM sys.availability_group_listeners WHERE dns_name = '$ListenerName')
    ALTER AVAILABILITY GROUP [$AGName] ADD LISTENER N'$ListenerName' (WITH IP ((N'$ListenerIP', N'$SubnetMask')), PORT = __SQL_PORT__);
"@

$ClusterResource = Get-ClusterResource -Cluster $PrimaryIP | Where-Object { $_.ResourceType -eq 'IP Address' -and $_.OwnerGroup -eq $AGName }
if ($ClusterResource) {
    $ClusterResource | Set-ClusterParameter -Multiple @{
        'Address' = $ListenerIP; 'ProbePort' = $ProbePort; 'SubnetMask' = '255.255.255.255';
        'Network' = (Get-ClusterNetwork -Cluster $PrimaryIP | Select-Object -First 1).Name; 'EnableDhcp' = 0
    }
}

Write-Output "Secondary $SecondaryServer joined $AGName"
"""


def encode_configure_parameters(parameters: Dict[str, Any]) -> str:
    """Base64 JSON, so values reach the script unchanged through cmd.exe argv parsing."""
    return base64.b64encode(json.dumps(parameters).encode("utf-8")).decode("ascii")


def render_configure_script() -> str:
    return (
        CONFIGURE_SCRIPT.replace("__SQL_PORT__", str(SQL_PORT))
        .replace("__ENDPOINT_PORT__", str(AG_ENDPOINT_PORT))
        .strip()
        + "\n"
    )
