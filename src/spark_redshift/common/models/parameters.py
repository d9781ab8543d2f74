"""
Data source parameters using Pydantic for validation.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, List, Mapping, Optional
from urllib.parse import urlparse

import boto3
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

# Unquoted identifier, or a double-quoted one with "" as the escaped quote
IDENTIFIER_PATTERN = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_IDENTIFIER_RE = re.compile(rf'^{IDENTIFIER_PATTERN}$')
_TABLE_NAME_RE = re.compile(rf'^({IDENTIFIER_PATTERN})(?:\.({IDENTIFIER_PATTERN}))?$')
_SORTKEY_RE = re.compile(
    r'^\s*(?:(COMPOUND|INTERLEAVED)\s+)?SORTKEY\s*\((.+)\)\s*$', re.IGNORECASE
)

STREAMING_SCHEMES = ("s3a", "s3n")
BLOCK_SCHEMES = ("s3",)
DIST_STYLES = ("EVEN", "KEY", "ALL", "AUTO")


class SaveMode(str, Enum):
    """Behaviour of a save when the target table already exists."""
    APPEND = "append"
    OVERWRITE = "overwrite"
    ERROR_IF_EXISTS = "errorifexists"
    IGNORE = "ignore"

    @classmethod
    def parse(cls, value: Any) -> "SaveMode":
        if isinstance(value, cls):
            return value
        normalized = str(value).lower().replace("_", "")
        if normalized in ("error", "default"):
            normalized = "errorifexists"
        try:
            return cls(normalized)
        except ValueError:
            allowed = [mode.value for mode in cls]
            raise ConfigurationError(f"Unknown save mode '{value}', expected one of {allowed}")


def is_identifier(text: str) -> bool:
    """Check that text is a plain or double-quoted SQL identifier."""
    return bool(_IDENTIFIER_RE.match(text))


def _unquote(part: str) -> str:
    if part.startswith('"'):
        return part[1:-1].replace('""', '"')
    return part


def _quote(name: str, quoted: bool) -> str:
    if quoted:
        return '"' + name.replace('"', '""') + '"'
    return name


@dataclass(frozen=True)
class TableName:
    """
    A possibly schema-qualified Redshift table name.

    Parts keep the quoting they were written with, so ``public.events`` renders
    as-is while ``"My Schema"."Events"`` keeps its quotes. Only well-formed
    identifiers are accepted, which keeps table names safe to splice into SQL.
    """
    table: str
    schema: Optional[str] = None
    table_quoted: bool = False
    schema_quoted: bool = False

    @classmethod
    def parse(cls, text: str) -> "TableName":
        match = _TABLE_NAME_RE.match(text.strip())
        if not match:
            raise ConfigurationError(
                f"Invalid table name {text!r}: expected 'table' or 'schema.table', "
                "quoting parts with double quotes if they contain special characters"
            )
        first, second = match.group(1), match.group(2)
        if second is None:
            return cls(table=_unquote(first), table_quoted=first.startswith('"'))
        return cls(
            table=_unquote(second),
            schema=_unquote(first),
            table_quoted=second.startswith('"'),
            schema_quoted=first.startswith('"'),
        )

    @property
    def unqualified(self) -> str:
        """Table part only, as required by ALTER TABLE ... RENAME TO."""
        return _quote(self.table, self.table_quoted)

    @property
    def catalog_table(self) -> str:
        """Table name as stored in the catalog (unquoted names fold to lowercase)."""
        return self.table if self.table_quoted else self.table.lower()

    @property
    def catalog_schema(self) -> Optional[str]:
        if self.schema is None:
            return None
        return self.schema if self.schema_quoted else self.schema.lower()

    def with_suffix(self, suffix: str) -> "TableName":
        return replace(self, table=self.table + suffix)

    def __str__(self) -> str:
        if self.schema is None:
            return self.unqualified
        return f"{_quote(self.schema, self.schema_quoted)}.{self.unqualified}"


class Parameters(BaseModel):
    """Validated, immutable parameters of one Redshift read or write."""
    model_config = ConfigDict(frozen=True)

    # Connection and staging
    url: str = Field(..., description="Redshift connection URL (jdbc:redshift://, redshift:// or postgresql://)")
    tempdir: str = Field(..., description="Staging root in S3, using the s3a:// or s3n:// scheme")

    # Source / target
    dbtable: Optional[str] = Field(None, description="Table to read or write, or a parenthesized query to read")
    query: Optional[str] = Field(None, description="Query to read from")

    # Write behaviour
    usestagingtable: Optional[bool] = Field(None, description="Load through a staging table")
    overwrite: bool = Field(False, description="Default save mode for save_to_redshift when none is given")
    diststyle: Optional[str] = Field(None, description="Distribution style of created tables; Redshift picks one when unset")
    distkey: Optional[str] = Field(None, description="Distribution key, required with DISTSTYLE KEY")
    sortkeyspec: Optional[str] = Field(None, description="Sort key, e.g. 'INTERLEAVED SORTKEY(a, b)'")
    preactions: List[str] = Field(default_factory=list, description="SQL run after creating the loaded table")
    postactions: List[str] = Field(default_factory=list, description="SQL run after a successful load")
    extracopyoptions: str = Field("", description="Extra options appended to the COPY statement")

    # Credentials forwarded to Redshift and used by the S3 client
    aws_access_key_id: Optional[str] = Field(None, description="AWS access key id")
    aws_secret_access_key: Optional[str] = Field(None, description="AWS secret access key")
    aws_session_token: Optional[str] = Field(None, description="AWS session token for temporary credentials")
    aws_iam_role: Optional[str] = Field(None, description="IAM role ARN Redshift assumes for UNLOAD/COPY")

    # S3 client
    s3endpoint: Optional[str] = Field(None, description="S3 endpoint override")
    s3region: Optional[str] = Field(None, description="S3 region")

    # Operational
    querytimeout: Optional[int] = Field(None, gt=0, description="Per-statement timeout in seconds")
    unloadmaxfilesizemb: int = Field(
        100, ge=5, le=6200, description="MAXFILESIZE of UNLOAD part files, in MB (Redshift allows 5 to 6200)"
    )
    tempdirlifecycledays: Optional[int] = Field(
        None, gt=0, description="Create a lifecycle rule expiring staged files after this many days"
    )

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "Parameters":
        """
        Build parameters from a flat, case-insensitive option map.

        Unrecognized keys are ignored.

        Raises:
            ConfigurationError: If a required key is missing or a value is invalid
        """
        params = {str(key).lower(): value for key, value in options.items() if value is not None}

        if "tempdir" not in params:
            raise ConfigurationError("'tempdir' is required for all Redshift loads and saves")
        if "url" not in params:
            raise ConfigurationError("A Redshift connection URL must be provided with the 'url' parameter")
        if "dbtable" not in params and "query" not in params:
            raise ConfigurationError(
                "You must specify a Redshift table name with the 'dbtable' parameter "
                "or a query with the 'query' parameter"
            )
        if "dbtable" in params and "query" in params:
            raise ConfigurationError(
                "You cannot specify both the 'dbtable' and 'query' parameters at the same time"
            )

        known = {key: value for key, value in params.items() if key in cls.model_fields}
        try:
            return cls(**known)
        except ValidationError as e:
            messages = [f"'{'.'.join(str(loc) for loc in err['loc']) or 'parameters'}': {err['msg']}"
                        for err in e.errors()]
            raise ConfigurationError("Invalid Redshift parameters: " + "; ".join(messages)) from e

    @field_validator('tempdir')
    @classmethod
    def validate_tempdir(cls, v):
        parsed = urlparse(v)
        scheme = parsed.scheme.lower()
        if scheme in BLOCK_SCHEMES:
            raise ValueError(
                f"spark-redshift does not support the S3 Block FileSystem (scheme '{scheme}://'). "
                "Please reconfigure `tempdir` to use a s3a:// or s3n:// scheme."
            )
        if scheme not in STREAMING_SCHEMES:
            raise ValueError(
                f"Unsupported tempdir scheme '{scheme}://'; use one of {list(STREAMING_SCHEMES)}"
            )
        if not parsed.netloc:
            raise ValueError(f"tempdir {v!r} does not name a bucket")
        return v

    @field_validator('dbtable')
    @classmethod
    def validate_dbtable(cls, v):
        if v is None or _is_subquery(v):
            return v
        try:
            TableName.parse(v)
        except ConfigurationError as e:
            raise ValueError(str(e))
        return v.strip()

    @field_validator('diststyle')
    @classmethod
    def validate_diststyle(cls, v):
        if v is None:
            return v
        style = v.strip().upper()
        if style not in DIST_STYLES:
            raise ValueError(f"diststyle must be one of {list(DIST_STYLES)}")
        return style

    @field_validator('distkey')
    @classmethod
    def validate_distkey(cls, v):
        if v is not None and not is_identifier(v.strip()):
            raise ValueError(f"distkey {v!r} is not a valid column identifier")
        return v.strip() if v else v

    @field_validator('sortkeyspec')
    @classmethod
    def validate_sortkeyspec(cls, v):
        if v is None or not v.strip():
            return None
        match = _SORTKEY_RE.match(v)
        if not match:
            raise ValueError(f"sortkeyspec {v!r} must look like '[COMPOUND|INTERLEAVED] SORTKEY(col, ...)'")
        columns = [c.strip() for c in match.group(2).split(',')]
        bad = [c for c in columns if not is_identifier(c)]
        if bad:
            raise ValueError(f"sortkeyspec contains invalid column identifiers: {bad}")
        prefix = f"{match.group(1).upper()} " if match.group(1) else ""
        return f"{prefix}SORTKEY ({', '.join(columns)})"

    @field_validator('preactions', 'postactions', mode='before')
    @classmethod
    def split_actions(cls, v):
        if isinstance(v, str):
            return [action.strip() for action in v.split(';') if action.strip()]
        return v

    @field_validator('extracopyoptions')
    @classmethod
    def validate_extracopyoptions(cls, v):
        if ';' in v:
            raise ValueError("extracopyoptions must not contain ';'")
        return v.strip()

    @model_validator(mode='after')
    def validate_distribution(self):
        if self.diststyle == "KEY" and not self.distkey:
            raise ValueError("distkey is required when diststyle is KEY")
        return self

    @property
    def table(self) -> Optional[TableName]:
        """Target table, or None when reading from a query."""
        if self.dbtable is None or _is_subquery(self.dbtable):
            return None
        return TableName.parse(self.dbtable)

    @property
    def source_expression(self) -> str:
        """What follows FROM in a read: a table name or a parenthesized query."""
        if self.query is not None:
            return f"({self.query.strip()})"
        if _is_subquery(self.dbtable):
            return self.dbtable.strip()
        return str(self.table)

    def credentials_string(self) -> str:
        """
        Build the CREDENTIALS clause value Redshift uses to reach S3.

        An IAM role wins over keys. Without either, the default boto3
        credential chain is consulted.
        """
        if self.aws_iam_role:
            return f"aws_iam_role={self.aws_iam_role}"

        access_key, secret_key, token = (
            self.aws_access_key_id, self.aws_secret_access_key, self.aws_session_token
        )
        if not (access_key and secret_key):
            credentials = boto3.Session().get_credentials()
            if credentials is None:
                raise ConfigurationError(
                    "No AWS credentials found: set 'aws_iam_role' or "
                    "'aws_access_key_id' and 'aws_secret_access_key'"
                )
            frozen = credentials.get_frozen_credentials()
            access_key, secret_key, token = frozen.access_key, frozen.secret_key, frozen.token
            logger.debug("Using AWS credentials from the default boto3 session")

        creds = f"aws_access_key_id={access_key};aws_secret_access_key={secret_key}"
        if token:
            creds += f";token={token}"
        return creds


def _is_subquery(text: Optional[str]) -> bool:
    if text is None:
        return False
    stripped = text.strip()
    return stripped.startswith("(") and stripped.endswith(")")
