"""
Provider adapters, keyed by destination id.

Each entry builds an adapter from a settings dict; S3-family ids share one
adapter with different endpoint profiles.
"""

from functools import partial

from .azure import AzureBlobProvider
from .b2 import BackblazeB2Provider
from .base import Provider
from .dropbox import DropboxProvider
from .google_drive import GoogleDriveProvider
from .onedrive import OneDriveProvider
from .pcloud import PCloudProvider
from .s3 import S3Provider
from .sftp import SFTPProvider


PROVIDERS = {
    'aws_s3': partial(S3Provider, provider_id='aws_s3'),
    'wasabi': partial(S3Provider, provider_id='wasabi'),
    's3': partial(S3Provider, provider_id='s3'),
    'azure_blob': AzureBlobProvider,
    'backblaze_b2': BackblazeB2Provider,
    'dropbox': DropboxProvider,
    'onedrive': OneDriveProvider,
    'pcloud': PCloudProvider,
    'google_drive': GoogleDriveProvider,
    'sftp': SFTPProvider,
}

__all__ = [
    'PROVIDERS',
    'Provider',
    'S3Provider',
    'AzureBlobProvider',
    'BackblazeB2Provider',
    'DropboxProvider',
    'OneDriveProvider',
    'PCloudProvider',
    'GoogleDriveProvider',
    'SFTPProvider',
]
