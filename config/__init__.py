"""
Project settings package.

  - `public_config.py`  non-sensitive defaults (env / `.env`)
  - `secret_config.py`  sensitive values (env / `.env.secrets`)
  - `settings.py`       merged `Settings` view + `get_settings()`
"""
