from app.models.user import AdminUser
from app.models.audit_log import AuditLog
from app.models.customer import Customer, CustomerGroup, CustomerGroupCustomer
