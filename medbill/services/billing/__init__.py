"""
Billing Services.

Decision engine, code reconciliation, claim assembly, fee resolution
and the pipeline that ties them to the 837P serializer. Import from the
submodules.
"""
