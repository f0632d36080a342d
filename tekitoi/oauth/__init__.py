# tekitoi/oauth/__init__.py
