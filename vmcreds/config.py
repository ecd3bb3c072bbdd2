"""Configuration module for the VM credential manager."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Configuration class for the VM credential manager."""
    
    # Database configuration
    DB_URL = os.getenv("VMCREDS_DB_URL", "sqlite:///vmcreds.db")
    
    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "vmcreds.log")
    
    # Control-plane deadlines, in seconds
    METADATA_TIMEOUT = float(os.getenv("METADATA_TIMEOUT", "10"))
    CERTIFICATE_READ_TIMEOUT = float(os.getenv("CERTIFICATE_READ_TIMEOUT", "20"))
    CERTIFICATE_WRITE_TIMEOUT = float(os.getenv("CERTIFICATE_WRITE_TIMEOUT", "60"))
    
    # Hashing configuration (bcrypt cost factors)
    ROOT_SECRET_ROUNDS = int(os.getenv("ROOT_SECRET_ROUNDS", "15"))
    PASSWORD_HASH_ROUNDS = int(os.getenv("PASSWORD_HASH_ROUNDS", "14"))
    
    # Credential configuration
    CERTIFICATE_FILENAME = os.getenv("CERTIFICATE_FILENAME", "ssh_key.pub")
    ROOT_USERNAME = "root"
    
    # Number of suffixed names tried when a VM name is taken
    NAME_SUFFIX_ATTEMPTS = int(os.getenv("NAME_SUFFIX_ATTEMPTS", "5"))
    
    # Seconds an audit write waits on a locked database before giving up
    AUDIT_WRITE_TIMEOUT = float(os.getenv("AUDIT_WRITE_TIMEOUT", "1"))
    
    def validate(self):
        """Validate the configuration."""
        for name in ("METADATA_TIMEOUT", "CERTIFICATE_READ_TIMEOUT", "CERTIFICATE_WRITE_TIMEOUT",
                     "AUDIT_WRITE_TIMEOUT"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid {name.lower()}")
        
        # bcrypt accepts cost factors between 4 and 31
        for name in ("ROOT_SECRET_ROUNDS", "PASSWORD_HASH_ROUNDS"):
            if not 4 <= getattr(self, name) <= 31:
                raise ValueError(f"Invalid {name.lower()}")
        
        if self.NAME_SUFFIX_ATTEMPTS < 1:
            raise ValueError("Invalid name suffix attempts")
        
        if not self.CERTIFICATE_FILENAME:
            raise ValueError("Certificate filename is required")
