from marshmallow import EXCLUDE, Schema, fields


class _FormSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    csrf_token = fields.Str(required=False, load_only=True)


class SignupFormSchema(_FormSchema):
    username = fields.Str(required=True)
    email = fields.Str(required=True)
    password = fields.Str(required=True)


class LoginFormSchema(_FormSchema):
    # Older login forms post "username"; either field names the account.
    identifier = fields.Str(required=False)
    username = fields.Str(required=False)
    password = fields.Str(required=True)


class CreateAccountFormSchema(_FormSchema):
    username = fields.Str(required=True)
    password = fields.Str(required=False, allow_none=True)


class VerifyFormSchema(_FormSchema):
    code = fields.Str(required=True)
