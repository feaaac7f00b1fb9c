from orgscope.models.grant import Grant
from orgscope.models.org import Actor, OrgUnit, Role, Tenant, actor_roles

__all__ = ["Actor", "Grant", "OrgUnit", "Role", "Tenant", "actor_roles"]
