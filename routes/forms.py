"""Form helpers shared by the JSON blueprints."""


def first_form_error(form) -> str:
    for field_name, errors in form.errors.items():
        if errors:
            return f"{field_name}: {errors[0]}"
    return "Invalid request"
